"""
Timestamp utilities for consistent time handling across the system.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_datetime(value: Optional[Union[int, float, str, datetime]] = None) -> datetime:
    """Convert a stored timestamp to an aware UTC datetime.

    Args:
        value: Unix seconds, ISO-8601 string or datetime (optional, uses current time if None)

    Returns:
        datetime object in UTC
    """
    if value is None:
        return utc_now()
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for document storage."""
    if value is None:
        return None
    return to_datetime(value).isoformat()


def round_to_granularity(value: datetime, minutes: int) -> datetime:
    """Round a datetime to the nearest multiple of `minutes` since the epoch."""
    step = minutes * 60
    seconds = to_datetime(value).timestamp()
    return datetime.fromtimestamp(round(seconds / step) * step, tz=timezone.utc)


def midpoint(start: datetime, end: datetime) -> datetime:
    """Point halfway between two datetimes."""
    start, end = to_datetime(start), to_datetime(end)
    return start + (end - start) / 2


def format_relative(value: datetime, now: Optional[datetime] = None) -> str:
    """Human readable distance from now, e.g. '5 minutes ago'."""
    delta = (now or utc_now()) - to_datetime(value)
    if delta < timedelta(minutes=1):
        return 'just now'

    for unit, seconds in (('day', 86400), ('hour', 3600), ('minute', 60)):
        count = int(delta.total_seconds() // seconds)
        if count >= 1:
            return f'{count} {unit}{"s" if count > 1 else ""} ago'

    return 'just now'


def format_absolute(value: datetime) -> str:
    """Compact UTC timestamp used in archival prompts."""
    return to_datetime(value).strftime('%Y-%m-%d %H:%M')
