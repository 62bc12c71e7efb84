"""
Timestamp utilities for consistent time handling across the system.

All timestamps stored in the catalog and written to transcripts are naive UTC.
"""

import calendar
from datetime import date, datetime, time, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """Parse an ISO-8601 string, unix seconds or datetime into naive UTC.

    Args:
        value: Raw timestamp value

    Returns:
        datetime object, or None if the value is empty or unparseable
    """
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    try:
        return to_naive_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))
    except (ValueError, AttributeError):
        return None


def day_bounds(day: date) -> tuple:
    """Inclusive start and end datetimes of a calendar day."""
    return datetime.combine(day, time.min), datetime.combine(day, time.max)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def months_before(value: datetime, months: int) -> datetime:
    """Shift a datetime back by calendar months, clamping the day to the target month's length."""
    index = value.year * 12 + value.month - 1 - months
    year, month = divmod(index, 12)
    day = min(value.day, calendar.monthrange(year, month + 1)[1])
    return value.replace(year=year, month=month + 1, day=day)
