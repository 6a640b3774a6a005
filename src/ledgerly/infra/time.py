"""Time utilities for consistent timestamp handling."""

from datetime import date, datetime, time, timedelta, timezone


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def day_start(day: date) -> datetime:
    """First instant of ``day`` in UTC."""
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def day_end_exclusive(day: date) -> datetime:
    """First instant after ``day`` in UTC (exclusive upper bound)."""
    return day_start(day) + timedelta(days=1)
