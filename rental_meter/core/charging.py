"""
External charging service interface.

The core never retries or deduplicates charges; it only guarantees it calls
at most once per rental period and once per paid item.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Protocol, Tuple

logger = logging.getLogger(__name__)


class ChargeEvent(Enum):
    """Billable event kinds."""
    RENTAL = "rental"
    RESULT = "result"


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a charge call."""
    limit_reached: bool = False


class ChargeServiceError(Exception):
    """Raised when a charge call fails. Never retried by the core."""
    def __init__(self, message: str, event: ChargeEvent):
        super().__init__(message)
        self.event = event


class ChargingService(Protocol):
    async def charge(self, event: ChargeEvent, count: int = 1) -> ChargeResult:
        ...


class InMemoryChargingService:
    """Charging service that records calls and enforces an optional cap.

    ``max_total_charges`` mirrors a per-run charge limit: the call that
    reaches the cap reports ``limit_reached``; calls beyond it charge
    nothing and report ``limit_reached`` again.
    """

    def __init__(self, max_total_charges: Optional[int] = None):
        if max_total_charges is not None and max_total_charges <= 0:
            raise ValueError("max_total_charges must be > 0")
        self.max_total_charges = max_total_charges
        self.calls: List[Tuple[ChargeEvent, int]] = []
        self.refused: List[Tuple[ChargeEvent, int]] = []

    @property
    def total_charged(self) -> int:
        return sum(count for _, count in self.calls)

    def count_for(self, event: ChargeEvent) -> int:
        """Total units charged for one event kind."""
        return sum(count for charged, count in self.calls if charged == event)

    async def charge(self, event: ChargeEvent, count: int = 1) -> ChargeResult:
        if count <= 0:
            raise ValueError("charge count must be > 0")

        if self.max_total_charges is not None and self.total_charged + count > self.max_total_charges:
            logger.info("Charge of %d x %s not made, limit of %d reached",
                        count, event.value, self.max_total_charges)
            self.refused.append((event, count))
            return ChargeResult(limit_reached=True)

        self.calls.append((event, count))
        limit_reached = (
            self.max_total_charges is not None
            and self.total_charged >= self.max_total_charges
        )
        return ChargeResult(limit_reached=limit_reached)
