"""Naive-UTC clock helpers.

SQLite drops tzinfo on DateTime columns, so every persisted timestamp is a
naive datetime in UTC.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_seconds(value: datetime) -> float:
    """Epoch seconds for a naive-UTC (or aware) datetime."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_epoch_millis(value: float) -> datetime:
    """Naive-UTC datetime from epoch milliseconds."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).replace(tzinfo=None)
