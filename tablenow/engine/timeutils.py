"""Date and time helpers shared by the lifecycle engine and availability oracle."""

import re
from datetime import datetime
from zoneinfo import ZoneInfo

_TWENTY_FOUR_HOUR = re.compile(r"^\d{2}:\d{2}$")
_CLOCK_TIME = re.compile(r"(\d{1,2}):(\d{2})\s*(AM|PM|am|pm)?")


def normalize_time(value: str | None) -> str | None:
    """Normalize a spoken or typed time to 24-hour ``HH:MM``.

    ``"19:30"`` passes through, ``"7:30 PM"`` becomes ``"19:30"`` and
    ``"12:00 AM"`` becomes ``"00:00"``. Values without a recognizable clock
    time are returned unchanged.
    """
    if not value:
        return value
    if _TWENTY_FOUR_HOUR.match(value):
        return value

    match = _CLOCK_TIME.search(value)
    if not match:
        return value

    hour = int(match.group(1))
    minute = match.group(2)
    meridiem = match.group(3)
    if meridiem:
        meridiem = meridiem.upper()
        if meridiem == "PM" and hour < 12:
            hour += 12
        if meridiem == "AM" and hour == 12:
            hour = 0
    return f"{hour:02d}:{minute}"


def slot_start(date: str, time: str, timezone: str) -> datetime:
    """Build the timezone-aware start of a booking slot.

    Raises:
        ValueError: If the date is not ``YYYY-MM-DD`` or the time not ``HH:MM``
    """
    naive = datetime.strptime(f"{date} {normalize_time(time)}", "%Y-%m-%d %H:%M")
    return naive.replace(tzinfo=ZoneInfo(timezone))


def spoken_time(value: datetime) -> str:
    """Format a time the way the assistant reads it out, e.g. ``7:30 PM``."""
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"
