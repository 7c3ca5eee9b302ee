# src/mci_registry/clock.py
from datetime import datetime, timezone
from typing import Callable

# Timestamps are naive UTC everywhere so SQLite and Postgres compare alike.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
