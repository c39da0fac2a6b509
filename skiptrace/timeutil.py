"""
UTC time helpers. All timestamps are stored as naive UTC datetimes.
"""
from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_day_bounds(now: datetime = None):
    """Return (start, end) of the UTC day containing `now`; end is exclusive."""
    now = now or utcnow()
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def isoformat(dt):
    return dt.isoformat() if dt else None
