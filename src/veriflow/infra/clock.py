"""UTC time helpers.

Timestamps are stored as naive UTC (SQLite and ``DateTime`` without timezone)
and compared as aware UTC.
"""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_db(value: Optional[datetime]) -> Optional[datetime]:
    """Naive UTC representation for persistence."""
    if value is None:
        return None
    return as_utc(value).replace(tzinfo=None)
