from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class InvalidTimezoneError(ValueError):
    """Raised when a timezone string is neither an IANA name nor a ±HH:MM offset."""


def _parse_offset(name: str) -> Optional[tzinfo]:
    # Strict ±HH:MM only.
    if len(name) != 6 or name[0] not in "+-" or name[3] != ":":
        return None
    hours, minutes = name[1:3], name[4:6]
    if not (hours.isdigit() and minutes.isdigit()):
        return None
    h, m = int(hours), int(minutes)
    if h > 23 or m > 59:
        return None
    offset = timedelta(hours=h, minutes=m)
    if name[0] == "-":
        offset = -offset
    return timezone(offset, name)


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """Resolve a user's timezone string to a tzinfo.

    Order: empty or "UTC" -> UTC, then an IANA name, then a fixed offset
    of the form ±HH:MM. Anything else raises InvalidTimezoneError.
    """
    if not name or name == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        pass
    fixed = _parse_offset(name)
    if fixed is not None:
        return fixed
    raise InvalidTimezoneError(f"invalid timezone: {name!r}")


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def project(value: Optional[datetime], tz: tzinfo) -> Optional[datetime]:
    if value is None:
        return None
    return to_utc(value).astimezone(tz)
