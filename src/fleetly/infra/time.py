"""Clock helpers shared by the pricing engine and the query cache."""

import time
from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current UTC time (timezone-aware)."""
    return datetime.now(timezone.utc)


def epoch_ms() -> int:
    """Wall-clock milliseconds since the epoch, as stored on cache entries."""
    return time.time_ns() // 1_000_000


def as_utc(value: datetime) -> datetime:
    """Treat a naive datetime as UTC; aware values are returned unchanged."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
