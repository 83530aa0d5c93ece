"""
End-to-end tests for metering sessions of several workers sharing one ledger.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from _ledger_testkit import FakeLedgerStore, VirtualClock
from rental_meter.config.loader import MeteringConfig
from rental_meter.core.charging import ChargeEvent, InMemoryChargingService
from rental_meter.core.decision import ChargeDecision
from rental_meter.core.rental import RentalState
from rental_meter.core.session import MeteringSession
from rental_meter.storage.models import PeriodMarker

T0 = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


def make_session(store, charging, clock, worker_id, **metering):
    config = MeteringConfig(**{
        "free_quota_threshold": 100,
        "settle_delay_ms": 5000,
        "quota_refresh_interval_ms": 2000,
        **metering,
    })
    return MeteringSession(
        config, store, charging,
        account_id="acme",
        worker_id=worker_id,
        clock=clock,
        sleep=clock.sleep,
    )


class TestMeteringSession:
    """Test a single worker's session."""

    def setup_method(self):
        self.clock = VirtualClock(T0)
        self.store = FakeLedgerStore(self.clock, visibility_delay=0.5)
        self.charging = InMemoryChargingService()

    @pytest.mark.asyncio
    async def test_partition_key_from_clock_and_account(self):
        session = make_session(self.store, self.charging, self.clock, "run-1")
        assert session.partition_key == "2024-05-acme"

    @pytest.mark.asyncio
    async def test_lifecycle_charges_rental_and_meters_items(self):
        """Start, produce, close: rental charged once, items metered."""
        session = make_session(
            self.store, self.charging, self.clock, "run-1", free_quota_threshold=2
        )
        await session.start()

        decisions = [await session.on_item_produced(k) for k in range(3)]
        assert decisions == [ChargeDecision.FREE, ChargeDecision.FREE, ChargeDecision.PAID]

        await self.clock.advance(5)
        assert await session.close() == RentalState.CHARGED
        assert self.charging.count_for(ChargeEvent.RENTAL) == 1
        assert self.charging.count_for(ChargeEvent.RESULT) == 1

    @pytest.mark.asyncio
    async def test_close_without_waiting_abandons_rental(self):
        session = make_session(self.store, self.charging, self.clock, "run-1")
        await session.start()

        assert await session.close(wait_for_rental=False) == RentalState.SKIPPED
        await self.clock.advance(10)
        assert self.charging.calls == []

    @pytest.mark.asyncio
    async def test_second_run_of_period_skips_rental(self):
        """A later run in the same period sees the marker and never charges rental."""
        await self.store.append("2024-05-acme", PeriodMarker(worker_id="run-0", timestamp=T0))
        await self.clock.advance(1)

        async with make_session(self.store, self.charging, self.clock, "run-1") as session:
            assert session.rental.state == RentalState.SKIPPED

        assert self.charging.calls == []

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self):
        session = make_session(self.store, self.charging, self.clock, "run-1")
        await session.start()
        with pytest.raises(RuntimeError):
            await session.start()
        await session.close(wait_for_rental=False)

    @pytest.mark.asyncio
    async def test_missing_identity_rejected(self):
        with pytest.raises(ValueError, match="account_id"):
            MeteringSession(MeteringConfig(), self.store, self.charging, "", "run-1")
        with pytest.raises(ValueError, match="worker_id"):
            MeteringSession(MeteringConfig(), self.store, self.charging, "acme", " ")

    def test_invalid_config_fails_before_ledger_access(self):
        """Configuration errors are raised before anything touches the ledger."""
        with pytest.raises(ValueError):
            make_session(self.store, self.charging, self.clock, "run-1", free_quota_threshold=-1)
        with pytest.raises(ValueError):
            make_session(self.store, self.charging, self.clock, "run-1", settle_delay_ms=0)
        assert self.store.list_calls == 0


class TestConcurrentWorkers:
    """Test several workers of one account producing in the same period."""

    @pytest.mark.asyncio
    async def test_three_interleaved_workers_share_quota(self):
        """3 x 40 items, quota 100, refresh every 2s: at least 100 free, bounded over-grant, one rental."""
        clock = VirtualClock(T0)
        store = FakeLedgerStore(clock, visibility_delay=0.5)
        charging = InMemoryChargingService()
        sessions = [make_session(store, charging, clock, f"run-{i}") for i in range(3)]
        for session in sessions:
            await session.start()

        decisions = []

        async def produce(session):
            for k in range(40):
                await clock.sleep(1.0)
                decisions.append(await session.on_item_produced(k))

        producers = [asyncio.create_task(produce(session)) for session in sessions]
        await clock.advance(45)
        await asyncio.gather(*producers)
        states = [await session.close() for session in sessions]

        free = decisions.count(ChargeDecision.FREE)
        paid = decisions.count(ChargeDecision.PAID)
        assert free + paid == 120
        # Each worker can miss at most ~3 items per other worker between refreshes.
        assert 100 <= free <= 112
        assert charging.count_for(ChargeEvent.RESULT) == paid
        assert charging.count_for(ChargeEvent.RENTAL) == 1
        assert states.count(RentalState.CHARGED) == 1

    @pytest.mark.asyncio
    async def test_stop_signal_is_per_worker(self):
        """A cap hit by one worker stops only that worker."""
        clock = VirtualClock(T0)
        store = FakeLedgerStore(clock)
        capped = make_session(
            store, InMemoryChargingService(max_total_charges=1), clock, "run-1",
            free_quota_threshold=0,
        )
        other = make_session(
            store, InMemoryChargingService(), clock, "run-2", free_quota_threshold=0,
        )
        await capped.start()
        await other.start()

        await capped.on_item_produced("a")
        await other.on_item_produced("b")

        assert capped.stop_requested
        assert not other.stop_requested
        await capped.close(wait_for_rental=False)
        await other.close(wait_for_rental=False)
