"""
Time helpers - all persisted timestamps are naive UTC
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (matches DateTime columns)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalise an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def isoformat_z(value: datetime | None) -> str | None:
    """Render a naive UTC datetime as ISO-8601 with a trailing Z."""
    if value is None:
        return None
    return to_naive_utc(value).isoformat() + "Z"
