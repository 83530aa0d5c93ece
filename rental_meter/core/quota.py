"""
Free quota tracking.

Keeps a local, approximate count of the free units granted this period.
The count is seeded from the ledger once, bumped optimistically by this
worker, and overwritten on a fixed timer by re-summing the partition.
Drift from other workers is bounded by the refresh interval; there is no
attempt at exact consensus.
"""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Iterable, Optional

from rental_meter.storage.ledger import LedgerUnavailableError, PartitionLedger
from rental_meter.storage.models import USAGE_TYPE, LedgerRecord

logger = logging.getLogger(__name__)


def sum_free_units(records: Iterable[LedgerRecord]) -> int:
    """Total ``count`` over the usage records of a listing."""
    return sum(record.count for record in records if record.type == USAGE_TYPE)


class QuotaTracker:
    """Cached count of free units used in one period partition."""

    def __init__(
        self,
        ledger: PartitionLedger,
        refresh_interval: float,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if refresh_interval <= 0:
            raise ValueError("refresh_interval must be > 0")
        self.ledger = ledger
        self.refresh_interval = refresh_interval
        self._sleep = sleep
        self.free_units_used = 0
        self._refresh_task: Optional[asyncio.Task] = None

    async def initialize(self) -> int:
        """Seed the count from a full listing of the partition."""
        count = await self.refresh()
        logger.info(
            "Free units used so far in %s: %d", self.ledger.partition_key, count
        )
        return count

    async def refresh(self) -> int:
        """Replace the cached count with the ledger's current sum.

        Local increments made while the listing was in flight are dropped.
        On a ledger failure the cached count is kept.
        """
        try:
            records = await self.ledger.list_all()
        except LedgerUnavailableError as e:
            logger.warning("Quota refresh failed, keeping cached count %d: %s", self.free_units_used, e)
            return self.free_units_used

        self.free_units_used = sum_free_units(records)
        logger.debug(
            "Free units count for %s refreshed: %d", self.ledger.partition_key, self.free_units_used
        )
        return self.free_units_used

    def increment(self, count: int = 1) -> int:
        """Optimistically count units as used. Returns the new count."""
        self.free_units_used += count
        return self.free_units_used

    def start(self) -> None:
        """Start the periodic refresh."""
        if self._refresh_task is not None:
            raise RuntimeError("Quota refresh already started")
        self._refresh_task = asyncio.create_task(self._refresh_periodically())

    async def _refresh_periodically(self) -> None:
        while True:
            await self._sleep(self.refresh_interval)
            await self.refresh()

    async def stop(self) -> None:
        """Stop the periodic refresh."""
        if self._refresh_task is None:
            return
        self._refresh_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._refresh_task
        self._refresh_task = None
