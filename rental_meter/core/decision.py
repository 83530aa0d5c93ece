"""
Per-unit charge decision.

Each produced item is either free (counted against the period's shared free
quota and recorded in the ledger) or paid (charged as a "result" event).
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from .charging import ChargeEvent, ChargingService
from .period import utc_now
from .quota import QuotaTracker
from rental_meter.storage.ledger import LedgerUnavailableError, PartitionLedger
from rental_meter.storage.models import UsageRecord

logger = logging.getLogger(__name__)


class ChargeDecision(Enum):
    FREE = "free"
    PAID = "paid"


class UnitChargeDecider:
    """Decides free vs. paid for every item this worker produces.

    The k-th item of a worker with no concurrent writers is free iff
    k <= free_quota_threshold.
    """

    def __init__(
        self,
        tracker: QuotaTracker,
        charging: ChargingService,
        worker_id: str,
        free_quota_threshold: int,
        ledger: Optional[PartitionLedger] = None,
        clock: Callable[[], datetime] = utc_now,
        stop_event: Optional[asyncio.Event] = None,
    ):
        if free_quota_threshold < 0:
            raise ValueError("free_quota_threshold must be >= 0")
        self.tracker = tracker
        self.ledger = ledger or tracker.ledger
        self.charging = charging
        self.worker_id = worker_id
        self.free_quota_threshold = free_quota_threshold
        self._clock = clock
        self.stop_event = stop_event if stop_event is not None else asyncio.Event()

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()

    async def decide(self, item: Any = None) -> ChargeDecision:
        """Decide and settle one produced item.

        Raises:
            ChargeServiceError: If charging a paid item fails
        """
        # Counted before deciding; the next refresh overwrites it.
        used = self.tracker.increment()

        if used <= self.free_quota_threshold:
            logger.info(
                "Granting free result. %d/%d used so far this period.",
                used, self.free_quota_threshold,
            )
            record = UsageRecord(count=1, worker_id=self.worker_id, timestamp=self._clock())
            try:
                await self.ledger.append(record)
            except LedgerUnavailableError as e:
                logger.warning("Free result not recorded in the ledger, still granted: %s", e)
            return ChargeDecision.FREE

        logger.info(
            "%d results used this period, no free results left (up to %d). Charging for this result.",
            used, self.free_quota_threshold,
        )
        result = await self.charging.charge(ChargeEvent.RESULT, 1)
        if result.limit_reached:
            logger.warning("Charge limit reached this run, stopping production")
            self.stop_event.set()
        return ChargeDecision.PAID
