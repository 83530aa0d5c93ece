"""
Metering session for one worker.

Wires period key derivation, the rental coordinator, the quota tracker and
the per-unit decider around a single ledger partition.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from .charging import ChargingService
from .decision import ChargeDecision, UnitChargeDecider
from .period import derive_partition_key, utc_now
from .quota import QuotaTracker
from .rental import RentalChargeCoordinator, RentalState
from rental_meter.config.loader import MeteringConfig
from rental_meter.storage.ledger import LedgerStore, PartitionLedger

logger = logging.getLogger(__name__)


class MeteringSession:
    """Billing coordination for one worker of one account."""

    def __init__(
        self,
        config: MeteringConfig,
        store: LedgerStore,
        charging: ChargingService,
        account_id: str,
        worker_id: str,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not account_id or not account_id.strip():
            raise ValueError("account_id is required and cannot be empty")
        if not worker_id or not worker_id.strip():
            raise ValueError("worker_id is required and cannot be empty")

        self.config = config
        self.account_id = account_id
        self.worker_id = worker_id
        self.partition_key = derive_partition_key(clock(), account_id)
        self.ledger = PartitionLedger(store, self.partition_key)
        self.stop_event = asyncio.Event()

        self.rental = RentalChargeCoordinator(
            self.ledger,
            charging,
            worker_id,
            settle_delay=config.settle_delay,
            clock=clock,
            sleep=sleep,
            stop_event=self.stop_event,
        )
        self.quota = QuotaTracker(self.ledger, config.quota_refresh_interval, sleep=sleep)
        self.decider = UnitChargeDecider(
            self.quota,
            charging,
            worker_id,
            config.free_quota_threshold,
            ledger=self.ledger,
            clock=clock,
            stop_event=self.stop_event,
        )
        self._started = False

    @property
    def stop_requested(self) -> bool:
        """True once a billing cap was reported; producers must not start new items."""
        return self.stop_event.is_set()

    async def start(self) -> None:
        if self._started:
            raise RuntimeError("Metering session already started")
        self._started = True
        logger.info("Metering %s as worker %s", self.partition_key, self.worker_id)
        await self.rental.start()
        await self.quota.initialize()
        self.quota.start()

    async def on_item_produced(self, item: Any = None) -> ChargeDecision:
        return await self.decider.decide(item)

    async def close(self, wait_for_rental: bool = True) -> RentalState:
        """Stop background work.

        Args:
            wait_for_rental: Let a pending rental check finish instead of
                abandoning it

        Raises:
            ChargeServiceError: If the pending rental charge failed
        """
        await self.quota.stop()
        if wait_for_rental:
            return await self.rental.wait()
        self.rental.cancel()
        return self.rental.state

    async def __aenter__(self) -> "MeteringSession":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close(wait_for_rental=exc_type is None)
