"""Time normalization: (date, time-of-day, timezone) to an absolute interval.

Accepted time-of-day forms:

* 12-hour with an am/pm marker, optionally spaced: ``"2:00 PM"``, ``"2pm"``,
  ``"12:30 a.m."``.
* 24-hour ``"HH:MM"`` (or a bare hour such as ``"14"``).

Minutes default to zero when omitted. The returned ``start``/``end`` are
timezone-aware UTC datetimes; ``end`` is exactly ``start + duration`` and never
includes buffers.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import InvalidDate, InvalidTimeFormat, InvalidTimezone

DATE_FORMAT = "%Y-%m-%d"

_TWELVE_HOUR = re.compile(r"^(\d{1,2})(?::(\d{2}))?\s*([ap])\.?\s*m\.?$", re.IGNORECASE)
_TWENTY_FOUR_HOUR = re.compile(r"^(\d{1,2})(?::(\d{2}))?$")


@dataclass(frozen=True)
class NormalizedTime:
    """Canonical bookable interval for one requested date/time."""

    date: str
    time: str
    start: datetime
    end: datetime
    timezone: str
    display: str


def get_zone(timezone_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(timezone_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise InvalidTimezone(f"Unknown timezone: {timezone_name}") from exc


def parse_date(value: Union[str, date]) -> date:
    """Parse a ``YYYY-MM-DD`` string into a real calendar date."""

    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise InvalidDate(f"Invalid date: {value!r}. Use YYYY-MM-DD")
    try:
        return datetime.strptime(value.strip(), DATE_FORMAT).date()
    except ValueError as exc:
        raise InvalidDate(f"Invalid date: {value!r}. Use YYYY-MM-DD") from exc


def parse_time_of_day(value: str) -> Tuple[int, int]:
    """Return ``(hour, minute)`` in 24-hour terms for a 12h or 24h string."""

    if not isinstance(value, str):
        raise InvalidTimeFormat(f"Invalid time format: {value!r}")
    text = value.strip()

    match = _TWELVE_HOUR.match(text)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if not 1 <= hour <= 12 or minute > 59:
            raise InvalidTimeFormat(f"Invalid time format: {value!r}")
        period = match.group(3).lower()
        if period == "a" and hour == 12:
            hour = 0
        elif period == "p" and hour != 12:
            hour += 12
        return hour, minute

    match = _TWENTY_FOUR_HOUR.match(text)
    if match:
        hour = int(match.group(1))
        minute = int(match.group(2) or 0)
        if hour > 23 or minute > 59:
            raise InvalidTimeFormat(f"Invalid time format: {value!r}")
        return hour, minute

    raise InvalidTimeFormat(f"Invalid time format: {value!r}. Use HH:MM or a time like '2:00 PM'")


def format_clock(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"


def format_display(moment: datetime, timezone_name: str) -> str:
    """Render e.g. ``Monday, January 5, 2026 at 2:00 PM`` in *timezone_name*."""

    local = moment.astimezone(get_zone(timezone_name))
    hour = local.hour % 12 or 12
    period = "PM" if local.hour >= 12 else "AM"
    return (
        f"{local.strftime('%A')}, {local.strftime('%B')} {local.day}, {local.year} "
        f"at {hour}:{local.minute:02d} {period}"
    )


def local_wall_clock(target_date: date, minutes_after_midnight: int, timezone_name: str) -> datetime:
    """Absolute UTC instant for a wall-clock offset on *target_date* in *timezone_name*."""

    zone = get_zone(timezone_name)
    midnight = datetime.combine(target_date, time.min, tzinfo=zone)
    # Aware arithmetic within one tzinfo is wall-clock arithmetic.
    return (midnight + timedelta(minutes=minutes_after_midnight)).astimezone(timezone.utc)


def normalize(
    date_value: Union[str, date],
    time_value: str,
    timezone_name: str,
    duration_minutes: int,
) -> NormalizedTime:
    """Convert a requested date/time into a canonical ``[start, end)`` interval."""

    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    target_date = parse_date(date_value)
    hour, minute = parse_time_of_day(time_value)
    start = local_wall_clock(target_date, hour * 60 + minute, timezone_name)
    end = start + timedelta(minutes=duration_minutes)
    return NormalizedTime(
        date=target_date.strftime(DATE_FORMAT),
        time=format_clock(hour, minute),
        start=start,
        end=end,
        timezone=timezone_name,
        display=format_display(start, timezone_name),
    )


__all__ = [
    "DATE_FORMAT",
    "NormalizedTime",
    "format_clock",
    "format_display",
    "get_zone",
    "local_wall_clock",
    "normalize",
    "parse_date",
    "parse_time_of_day",
]
