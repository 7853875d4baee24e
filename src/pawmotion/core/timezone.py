"""UTC time helpers.

All timestamps are stored as naive UTC datetimes so they compare the same way
on PostgreSQL and SQLite.
"""

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    """Current UTC time without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def seconds_from_now(seconds: float, now: datetime | None = None) -> datetime:
    """Naive UTC timestamp `seconds` after `now` (default: current time)."""
    return (now or utcnow()) + timedelta(seconds=seconds)
