"""Time helpers: everything the backend stores is timezone-aware UTC."""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Treat naive datetimes as UTC and convert aware ones to UTC.

    SQLite hands back naive datetimes even for DateTime(timezone=True)
    columns, so comparisons go through here.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
