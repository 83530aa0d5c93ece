"""
Shared fakes for ledger and timing tests.

VirtualClock stands in for both wall-clock time and asyncio.sleep so that
settle delays and refresh timers fire only when a test advances time.
FakeLedgerStore hides each append from listings until its visibility delay
has passed, which is how cross-worker read-after-write lag is simulated.
"""

import asyncio
import heapq
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Sequence, Union

from rental_meter.core.charging import ChargeEvent, ChargeResult, ChargeServiceError
from rental_meter.storage.models import LedgerRecord

PARTITION = "2024-05-acme"


async def settle_tasks(rounds: int = 50) -> None:
    """Let ready tasks run until they block on the virtual clock."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class VirtualClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)
        self._sleepers = []
        self._seq = 0

    def __call__(self) -> datetime:
        return self.now

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()
        self._seq += 1
        heapq.heappush(self._sleepers, (self.now + timedelta(seconds=seconds), self._seq, future))
        await future

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking sleepers in deadline order."""
        target = self.now + timedelta(seconds=seconds)
        await settle_tasks()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, future = heapq.heappop(self._sleepers)
            self.now = max(self.now, deadline)
            if not future.done():
                future.set_result(None)
            await settle_tasks()
        self.now = target
        await settle_tasks()


class FakeLedgerStore:
    """In-memory ledger with delayed visibility and injectable failures."""

    def __init__(
        self,
        clock: Callable[[], datetime],
        visibility_delay: Union[float, Callable[[LedgerRecord], float]] = 0.0,
    ):
        self.clock = clock
        self.visibility_delay = visibility_delay
        self.fail_appends = False
        self.fail_listings = False
        self.list_calls = 0
        self._partitions = defaultdict(list)

    def _visible_at(self, record: LedgerRecord) -> datetime:
        delay = self.visibility_delay
        if callable(delay):
            delay = delay(record)
        return self.clock() + timedelta(seconds=delay)

    async def append(self, partition_key: str, record: LedgerRecord) -> None:
        if self.fail_appends:
            raise ConnectionError("ledger unavailable")
        self._partitions[partition_key].append((self._visible_at(record), record))

    async def append_batch(self, partition_key: str, records: Sequence[LedgerRecord]) -> None:
        if self.fail_appends:
            raise ConnectionError("ledger unavailable")
        for record in records:
            self._partitions[partition_key].append((self._visible_at(record), record))

    async def list_all(self, partition_key: str) -> List[LedgerRecord]:
        self.list_calls += 1
        if self.fail_listings:
            raise ConnectionError("ledger unavailable")
        now = self.clock()
        return [record for visible_at, record in self._partitions[partition_key] if visible_at <= now]

    def records(self, partition_key: str) -> List[LedgerRecord]:
        """Every record ever appended, visible or not."""
        return [record for _, record in self._partitions[partition_key]]


class FailingChargingService:
    """Charging service whose calls always fail."""

    def __init__(self):
        self.calls = []

    async def charge(self, event: ChargeEvent, count: int = 1) -> ChargeResult:
        self.calls.append((event, count))
        raise ChargeServiceError(f"payment backend rejected {event.value}", event)
