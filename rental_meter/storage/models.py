"""
Data models for the ledger.

Defines the two record kinds that share a period partition.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Union


PERIOD_MARKER_TYPE = "period-marker"
USAGE_TYPE = "usage"


def _as_utc(timestamp: datetime) -> datetime:
    """Return ``timestamp`` in UTC, treating naive values as UTC already."""
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


@dataclass(frozen=True)
class PeriodMarker:
    """Claim by a worker to be the first run of the billing period.

    Several workers may write one; only the earliest observed is honoured
    for rental billing.
    """
    worker_id: str
    timestamp: datetime
    type: str = field(default=PERIOD_MARKER_TYPE, init=False)

    def __post_init__(self):
        object.__setattr__(self, "timestamp", _as_utc(self.timestamp))


@dataclass(frozen=True)
class UsageRecord:
    """Free units granted by a worker.

    Append-only: once written, these records must never be modified.
    """
    count: int
    worker_id: str
    timestamp: datetime
    type: str = field(default=USAGE_TYPE, init=False)

    def __post_init__(self):
        if isinstance(self.count, bool) or not isinstance(self.count, int) or self.count <= 0:
            raise ValueError("usage count must be a positive integer")
        object.__setattr__(self, "timestamp", _as_utc(self.timestamp))


LedgerRecord = Union[PeriodMarker, UsageRecord]


def record_to_dict(record: LedgerRecord) -> Dict[str, Any]:
    """Serialize a record to a JSON-compatible dict keyed by its discriminant."""
    if record.type == PERIOD_MARKER_TYPE:
        return {
            "type": record.type,
            "workerId": record.worker_id,
            "timestamp": record.timestamp.isoformat(),
        }
    if record.type == USAGE_TYPE:
        return {
            "type": record.type,
            "count": record.count,
            "workerId": record.worker_id,
            "timestamp": record.timestamp.isoformat(),
        }
    raise ValueError(f"Unknown ledger record type: {record.type}")


def record_from_dict(data: Dict[str, Any]) -> LedgerRecord:
    """Deserialize a record by switching on its ``type`` discriminant.

    Raises:
        ValueError: If the discriminant is unknown or fields are invalid
    """
    record_type = data.get("type")
    try:
        if record_type == PERIOD_MARKER_TYPE:
            return PeriodMarker(
                worker_id=data["workerId"],
                timestamp=datetime.fromisoformat(data["timestamp"]),
            )
        if record_type == USAGE_TYPE:
            return UsageRecord(
                count=data["count"],
                worker_id=data["workerId"],
                timestamp=datetime.fromisoformat(data["timestamp"]),
            )
    except KeyError as e:
        raise ValueError(f"Ledger record of type {record_type!r} missing field {e}") from e
    raise ValueError(f"Unknown ledger record type: {record_type!r}")
