"""
Clock helpers.

All persisted timestamps are naive UTC so SQLite and PostgreSQL round-trip
them identically.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_timestamp(value) -> datetime:
    """Convert a unix timestamp (as sent by Stripe) to naive UTC."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)


def to_timestamp(value: datetime) -> int:
    """Convert a naive UTC datetime to a unix timestamp."""
    return int(value.replace(tzinfo=timezone.utc).timestamp())
