"""Time arithmetic for dose slots — pure functions, no state.

Slot times are "HH:MM" 24-hour strings. All datetimes handled by the core
are naive local wall-clock times in the configured TIMEZONE.
"""

from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo


_HHMM = re.compile(r"^(\d{1,2}):(\d{1,2})$")


def parse_hhmm(raw: str) -> tuple[int, int]:
    """Extract (hour, minute) from an "HH:MM" string.

    Raises ValueError on malformed input.
    """
    match = _HHMM.match(raw.strip()) if isinstance(raw, str) else None
    if match is None:
        raise ValueError(f"Not an HH:MM time: {raw!r}")

    hour, minute = int(match.group(1)), int(match.group(2))
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        raise ValueError(f"Hour/minute out of range: {hour}:{minute}")
    return hour, minute


def normalize_hhmm(raw: str) -> str:
    """Return the zero-padded "HH:MM" form ("8:5" -> "08:05")."""
    hour, minute = parse_hhmm(raw)
    return f"{hour:02d}:{minute:02d}"


def time_to_minutes(raw: str) -> int:
    """Convert "HH:MM" to minutes since midnight."""
    hour, minute = parse_hhmm(raw)
    return hour * 60 + minute


def is_time_in_range(value: str, start: str, end: str) -> bool:
    """Check if a time falls within [start, end], both bounds inclusive.

    A range whose start is after its end (e.g. 22:00-07:00) wraps midnight.
    """
    t = time_to_minutes(value)
    s = time_to_minutes(start)
    e = time_to_minutes(end)

    if s > e:
        return t >= s or t <= e
    return s <= t <= e


def combine(day: date, hhmm: str) -> datetime:
    """Build the datetime of an "HH:MM" slot on a given calendar day."""
    hour, minute = parse_hhmm(hhmm)
    return datetime.combine(day, time(hour, minute))


def next_trigger(hhmm: str, now: datetime) -> datetime:
    """Today's instant for the slot, or tomorrow's if it is not in the future."""
    trigger = combine(now.date(), hhmm)
    if trigger <= now:
        trigger += timedelta(days=1)
    return trigger


def start_of_day(moment: datetime) -> datetime:
    return datetime.combine(moment.date(), time.min)


def date_key(day: date) -> str:
    """Calendar key used for the rollover marker and the history map."""
    return day.isoformat()


def now_local(tz_name: str | None = None) -> datetime:
    """Current wall-clock time in the configured zone, as a naive datetime."""
    if tz_name is None:
        from medminder.config import settings
        tz_name = settings.TIMEZONE
    return datetime.now(ZoneInfo(tz_name)).replace(tzinfo=None)
