"""
Timezone utilities for the kiosk calendar.

All occurrence instants are stored in UTC. Floating times are interpreted as
wall-clock time in the configured default zone, and all-day dates are pinned
to 12:00 UTC so that rendering them in any zone keeps the calendar date.
"""

from datetime import date, datetime, time, timezone as dt_timezone, tzinfo
from typing import Optional

import pytz


DEFAULT_TIMEZONE = "America/Chicago"

# Default timezone - can be overridden by config
_default_timezone_name: str = DEFAULT_TIMEZONE

ALL_DAY_ANCHOR = time(12, 0)


def set_default_timezone(timezone_name: str) -> None:
    """
    Set the zone used for floating times.

    Raises:
        pytz.UnknownTimeZoneError: if the name is not an IANA zone.
    """
    global _default_timezone_name
    pytz.timezone(timezone_name)
    _default_timezone_name = timezone_name


def get_default_timezone_name() -> str:
    return _default_timezone_name


def get_zone(timezone_name: Optional[str] = None):
    """
    Get a pytz timezone object.

    Args:
        timezone_name: IANA zone name; defaults to the configured default zone.
    """
    return pytz.timezone(timezone_name or _default_timezone_name)


def is_known_zone(timezone_name: Optional[str]) -> bool:
    return bool(timezone_name) and timezone_name in pytz.all_timezones_set


def zone_name(tz: Optional[tzinfo]) -> Optional[str]:
    """
    Get the IANA identifier of a tzinfo object, if it has one.

    Handles pytz (``zone``), zoneinfo (``key``) and fixed UTC offsets.
    Returns None for zones that cannot be named.
    """
    if tz is None:
        return None
    name = getattr(tz, "zone", None) or getattr(tz, "key", None)
    if name:
        return "UTC" if name in ("Etc/UTC", "Z") else name
    if tz is dt_timezone.utc or tz.utcoffset(None) == dt_timezone.utc.utcoffset(None):
        if tz.tzname(None) in ("UTC", "Z"):
            return "UTC"
    return None


def localize(wall: datetime, tz: tzinfo) -> datetime:
    """
    Attach a zone to a naive wall-clock datetime.

    pytz zones must go through localize() to pick the right offset;
    any other tzinfo can be attached directly.
    """
    if hasattr(tz, "localize"):
        return tz.localize(wall)
    return wall.replace(tzinfo=tz)


def floating_to_utc(wall: datetime, timezone_name: Optional[str] = None) -> datetime:
    """
    Convert a floating (naive) datetime to UTC.

    The literal clock time is read as wall time in the given zone, or in the
    default zone when none is given: a floating 09:30 in America/Chicago in
    November becomes 15:30 UTC.
    """
    return localize(wall, get_zone(timezone_name)).astimezone(pytz.UTC)


def to_utc_datetime(dt: datetime) -> datetime:
    """
    Convert a datetime to UTC.

    Args:
        dt: A datetime object; naive values are treated as floating time.

    Returns:
        A timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        return floating_to_utc(dt)
    return dt.astimezone(pytz.UTC)


def to_wall_time(dt: datetime, tz: tzinfo) -> datetime:
    """Express an aware datetime as naive wall-clock time in the given zone."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(tz).replace(tzinfo=None)


def all_day_instant(day: date) -> datetime:
    """
    Pin an all-day date to 12:00 UTC on that date.

    Noon keeps the date stable when the instant is later rendered in any zone
    between UTC-12 and UTC+11.
    """
    return pytz.UTC.localize(datetime.combine(day, ALL_DAY_ANCHOR))


def midnight_utc(day: date) -> datetime:
    return pytz.UTC.localize(datetime.combine(day, time()))


def epoch_ms(dt: datetime) -> int:
    """Convert an aware datetime to integer epoch milliseconds."""
    return int(round(to_utc_datetime(dt).timestamp() * 1000))


def from_epoch_ms(value: Optional[int]) -> Optional[datetime]:
    """Convert epoch milliseconds to an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000.0, tz=pytz.UTC)


def isoformat_z(dt: Optional[datetime]) -> Optional[str]:
    """Format an instant as ISO-8601 UTC with a 'Z' suffix."""
    if dt is None:
        return None
    utc = to_utc_datetime(dt)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_iso_instant(value: str) -> datetime:
    """
    Parse an ISO-8601 date or datetime into an aware UTC datetime.

    Bare dates and naive datetimes are read as UTC.

    Raises:
        ValueError: if the string is not ISO-8601.
    """
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        return pytz.UTC.localize(parsed)
    return parsed.astimezone(pytz.UTC)
