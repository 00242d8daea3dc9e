"""Date manipulation utilities"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional, Tuple


def utcnow() -> datetime:
    """Current time as an aware UTC datetime"""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def trailing_date_range(days: int, end: date | None = None) -> Tuple[date, date]:
    """Return (start, end) covering the trailing window of `days` days (inclusive)"""
    end = end or utcnow().date()
    return end - timedelta(days=days), end


def parse_date(value) -> date:
    """Accept a date, datetime or ISO string; raise ValueError otherwise"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        return date.fromisoformat(value[:10])
    raise ValueError(f"Unsupported date value: {value!r}")


def parse_timestamp(value) -> Optional[datetime]:
    """ISO-8601 timestamp (trailing Z accepted) as aware UTC; None passes through"""
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, str):
        return as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    raise ValueError(f"Unsupported timestamp value: {value!r}")
