"""
Time helpers.

All timestamps persisted by the engine are naive UTC datetimes, matching
the DateTime columns of the schema. Calendar sources hand us aware
datetimes, which are normalized here before any comparison.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """
    Normalize a datetime to naive UTC.

    Aware values are converted to UTC; naive values are assumed to be UTC
    already and returned unchanged.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
