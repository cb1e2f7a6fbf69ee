"""UTC helpers shared by the store, the dispatcher and the promoter."""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes.

    SQLite (used in tests) drops tzinfo on the way back out, and callers may
    pass naive values. Everything in this project is stored as UTC, so a
    naive value is always UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def seconds_until(when: datetime, now: datetime) -> float:
    """Non-negative delay in seconds from now until when."""
    return max(0.0, (ensure_utc(when) - ensure_utc(now)).total_seconds())


def promotable_at(run_at: datetime, window_minutes: int) -> datetime:
    """Earliest moment the promoter may hand a record to the broker."""
    return ensure_utc(run_at) - timedelta(minutes=window_minutes)
