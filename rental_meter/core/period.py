"""
Billing period partitioning.

Maps wall-clock time and an account to the ledger partition for that period.
"""

from datetime import datetime, timezone


def derive_partition_key(now: datetime, account_id: str) -> str:
    """Return the ledger partition key for the calendar month of ``now``.

    The month is taken in UTC so workers in different time zones agree on
    the period. Naive datetimes are treated as UTC.

    Args:
        now: Current wall-clock time
        account_id: Account being billed

    Returns:
        Key of the form ``YYYY-MM-<account_id>``
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    else:
        now = now.astimezone(timezone.utc)
    return f"{now:%Y-%m}-{account_id}"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
