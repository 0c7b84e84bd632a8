"""
Small shared helpers.
"""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.

    Timestamps are stored without a zone in every backend, so all
    comparisons happen between naive UTC values.
    """
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(value: datetime | None) -> datetime | None:
    """Normalize an aware datetime to naive UTC; naive values pass through."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)
