"""Calendar helpers for the reference timezone.

All timestamps are stored in UTC. Day, week and month boundaries are taken
in the configured reference timezone and converted back to UTC for queries.
"""

from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def local_day(value: datetime, zone: ZoneInfo) -> date:
    """Calendar day of ``value`` in the reference timezone."""
    return ensure_utc(value).astimezone(zone).date()


def local_hour(value: datetime, zone: ZoneInfo) -> int:
    return ensure_utc(value).astimezone(zone).hour


def day_start(day: date, zone: ZoneInfo) -> datetime:
    """UTC instant of local midnight at the start of ``day``."""
    return datetime.combine(day, time.min, tzinfo=zone).astimezone(timezone.utc)


def day_bounds(day: date, zone: ZoneInfo) -> tuple[datetime, datetime]:
    """Half-open UTC range ``[start, end)`` covering local ``day``."""
    return day_start(day, zone), day_start(day + timedelta(days=1), zone)


def week_start(day: date) -> date:
    """Monday of the week containing ``day``."""
    return day - timedelta(days=day.weekday())


def month_start(day: date) -> date:
    return day.replace(day=1)


def hour_in_window(hour: int, start: int, end: int) -> bool:
    """Whether ``hour`` falls in ``[start, end)``; windows may wrap midnight."""
    if start == end:
        return False
    if start < end:
        return start <= hour < end
    return hour >= start or hour < end
