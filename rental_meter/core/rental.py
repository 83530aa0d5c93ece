"""
Rental charge coordination.

Charges the periodic rental fee once per period even when several workers
of the same account start together. There is no lock: a worker that finds
no period marker writes its own, waits for the settle delay so concurrent
claims become visible, re-reads the partition and charges only if its
marker is still the authoritative one.

States: UNCHECKED -> PENDING -> CHARGED | SKIPPED. Any uncertainty ends in
SKIPPED; an eligible worker may miss its charge, two workers never both charge.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Iterable, Optional

from .charging import ChargeEvent, ChargeServiceError, ChargingService
from .period import utc_now
from rental_meter.storage.ledger import LedgerUnavailableError, PartitionLedger
from rental_meter.storage.models import PERIOD_MARKER_TYPE, LedgerRecord, PeriodMarker

logger = logging.getLogger(__name__)


class RentalState(Enum):
    UNCHECKED = "unchecked"
    PENDING = "pending"
    CHARGED = "charged"
    SKIPPED = "skipped"


def select_authoritative_marker(records: Iterable[LedgerRecord]) -> Optional[PeriodMarker]:
    """Pick the marker that owns the period.

    Lowest timestamp wins; ties go to the marker seen first in this listing.
    """
    authoritative = None
    for record in records:
        if record.type != PERIOD_MARKER_TYPE:
            continue
        if authoritative is None or record.timestamp < authoritative.timestamp:
            authoritative = record
    return authoritative


class RentalChargeCoordinator:
    """Decides, for one worker, whether it pays this period's rental."""

    def __init__(
        self,
        ledger: PartitionLedger,
        charging: ChargingService,
        worker_id: str,
        settle_delay: float,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        stop_event: Optional[asyncio.Event] = None,
    ):
        """
        Args:
            ledger: Client bound to this period's partition
            charging: External charging service
            worker_id: Identity written into this worker's marker
            settle_delay: Seconds to wait before trusting the marker; must
                exceed the ledger's read-after-write lag between workers
            clock: Source of marker timestamps
            sleep: Awaitable used for the settle delay
            stop_event: Set if the rental charge reports a billing cap
        """
        if settle_delay <= 0:
            raise ValueError("settle_delay must be > 0")
        self.ledger = ledger
        self.charging = charging
        self.worker_id = worker_id
        self.settle_delay = settle_delay
        self._clock = clock
        self._sleep = sleep
        self._stop_event = stop_event
        self.state = RentalState.UNCHECKED
        self._pending_check: Optional[asyncio.Task] = None
        self._abandoned = False

    @property
    def pending_check(self) -> Optional[asyncio.Task]:
        return self._pending_check

    async def start(self) -> RentalState:
        """Stake a claim on the period if nobody has yet.

        Returns immediately; when a claim is written the re-validation runs
        as a background task after the settle delay.
        """
        if self.state is not RentalState.UNCHECKED:
            raise RuntimeError(f"Rental check already started (state: {self.state.value})")

        try:
            records = await self.ledger.list_all()
        except LedgerUnavailableError as e:
            return self._skip(f"could not read the ledger: {e}", logging.WARNING)

        if any(record.type == PERIOD_MARKER_TYPE for record in records):
            return self._skip("this is not the first run this period")

        marker = PeriodMarker(worker_id=self.worker_id, timestamp=self._clock())
        try:
            await self.ledger.append(marker)
        except LedgerUnavailableError as e:
            return self._skip(f"could not write the period marker: {e}", logging.WARNING)

        self.state = RentalState.PENDING
        logger.info(
            "Registered %s as first run of %s, confirming in %.1fs",
            self.worker_id, self.ledger.partition_key, self.settle_delay,
        )
        self._pending_check = asyncio.create_task(self._settle_then_revalidate())
        return self.state

    async def _settle_then_revalidate(self) -> RentalState:
        await self._sleep(self.settle_delay)
        return await self.revalidate()

    async def revalidate(self) -> RentalState:
        """Re-read the partition and charge rental if this worker's claim stands.

        Raises:
            ChargeServiceError: If the rental charge call fails
        """
        if self.state is not RentalState.PENDING:
            raise RuntimeError(f"No pending rental claim (state: {self.state.value})")

        try:
            records = await self.ledger.list_all()
        except LedgerUnavailableError as e:
            return self._skip(f"could not re-read the ledger: {e}", logging.WARNING)

        marker = select_authoritative_marker(records)
        if marker is None:
            return self._skip("own period marker is not visible yet")
        if marker.worker_id != self.worker_id:
            return self._skip(
                f"another parallel run ({marker.worker_id}) already registered as the first run"
            )

        try:
            result = await self.charging.charge(ChargeEvent.RENTAL, 1)
        except ChargeServiceError:
            self.state = RentalState.SKIPPED
            logger.error("Rental charge for %s failed, not retrying", self.ledger.partition_key)
            raise

        self.state = RentalState.CHARGED
        logger.info("Charged rental for %s as the first run this period", self.ledger.partition_key)
        if result.limit_reached:
            logger.warning("Charge limit reached by rental charge, stopping production")
            if self._stop_event is not None:
                self._stop_event.set()
        return self.state

    async def wait(self) -> RentalState:
        """Wait for a pending check, re-raising its charge failure if any."""
        if self._pending_check is not None and not self._abandoned:
            await self._pending_check
        return self.state

    def cancel(self) -> None:
        """Abandon a pending check. The rental is not charged.

        A check that already failed is not re-raised here; its error is
        logged instead.
        """
        task = self._pending_check
        if task is None:
            return
        self._abandoned = True
        if not task.done():
            task.cancel()
            self.state = RentalState.SKIPPED
            logger.info("Pending rental check for %s cancelled", self.ledger.partition_key)
        elif not task.cancelled() and task.exception() is not None:
            logger.error(
                "Abandoned rental check for %s had failed: %s",
                self.ledger.partition_key, task.exception(),
            )

    def _skip(self, reason: str, level: int = logging.INFO) -> RentalState:
        self.state = RentalState.SKIPPED
        logger.log(level, "Skipping rental charge: %s", reason)
        return self.state
