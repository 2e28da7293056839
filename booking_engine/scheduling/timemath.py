"""Timezone-aware arithmetic between local wall-clock rules and absolute instants.

All durations are added to UTC instants, never to local wall-clock values,
so a window that spans a daylight-saving change still yields slots of the
exact requested length.
"""

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from booking_engine.errors import ValidationError


def get_zone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name, raising ValidationError if unknown."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name!r}", timezone=name) from None


def day_of_week(day: date) -> int:
    """Day of week with 0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def local_to_instant(day: date, wall_time: time, zone: ZoneInfo) -> datetime:
    """Convert a local calendar date and wall-clock time to a UTC instant."""
    local = datetime.combine(day, wall_time).replace(tzinfo=zone)
    return local.astimezone(timezone.utc)


def to_zone(instant: datetime, zone: tzinfo) -> datetime:
    """Express an instant in ``zone`` without changing the instant."""
    if instant.tzinfo is None:
        raise ValidationError("Naive datetime cannot be converted between zones")
    return instant.astimezone(zone)


def local_date(value: Union[date, datetime], zone: ZoneInfo) -> date:
    """Calendar date of ``value`` as seen in ``zone``.

    Aware datetimes are converted first, so an instant late on Monday in the
    builder's zone is Monday even when it is already Tuesday in UTC. Plain
    dates and naive datetimes are taken as already local.
    """
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.date()
        return value.astimezone(zone).date()
    return value


def add_minutes(instant: datetime, minutes: int) -> datetime:
    """Add a duration in absolute time."""
    return (instant.astimezone(timezone.utc) + timedelta(minutes=minutes))


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Open-interval overlap: touching endpoints do not overlap."""
    return a_start < b_end and b_start < a_end
