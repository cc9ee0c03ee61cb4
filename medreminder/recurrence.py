"""
Time / Recurrence Utility

Pure helpers for turning "HH:MM" labels plus a calendar day into absolute,
timezone-aware instants. No state, no I/O.
"""

import re
from datetime import date, datetime, timedelta, tzinfo
from typing import Iterator, Optional, Tuple

from dateutil import tz

from medreminder.errors import MalformedDataError


_LABEL_RE = re.compile(r"^(\d{1,2}):(\d{2})$")


def get_timezone(name: Optional[str] = None) -> tzinfo:
    """Resolve an IANA zone name. None (or an unknown name) means local time."""
    if name:
        zone = tz.gettz(name)
        if zone is not None:
            return zone
    return tz.tzlocal()


def parse_time_label(label: str) -> Tuple[int, int]:
    """Parse "HH:MM" (24-hour) into (hour, minute).

    Raises MalformedDataError for anything else: "8am", "25:00", "08:60",
    "08:00:00", empty strings, non-strings.
    """
    if not isinstance(label, str):
        raise MalformedDataError(f"Time label must be a string, got {type(label).__name__}")
    m = _LABEL_RE.match(label.strip())
    if not m:
        raise MalformedDataError(f"Unparseable time label: {label!r}")
    hour, minute = int(m.group(1)), int(m.group(2))
    if hour > 23 or minute > 59:
        raise MalformedDataError(f"Time label out of range: {label!r}")
    return hour, minute


def format_time_label(hour: int, minute: int) -> str:
    return f"{hour:02d}:{minute:02d}"


def normalize_time_label(label: str) -> str:
    """Canonical zero-padded form: "8:05" -> "08:05"."""
    return format_time_label(*parse_time_label(label))


def resolve_instant(day: date, label: str, zone: Optional[tzinfo] = None) -> datetime:
    """Combine a calendar day and a time label in the given zone.

    Wall-clock times skipped by a DST jump (e.g. 02:30 on spring-forward
    night) are moved forward to the first real instant after the gap.
    """
    hour, minute = parse_time_label(label)
    zone = zone or tz.tzlocal()
    candidate = datetime(day.year, day.month, day.day, hour, minute, tzinfo=zone)
    return tz.resolve_imaginary(candidate)


def iter_days(start: date, horizon_days: int) -> Iterator[date]:
    """Yield start, start+1, ... start+horizon_days-1."""
    for offset in range(max(0, horizon_days)):
        yield start + timedelta(days=offset)


def day_bounds(day: date, zone: Optional[tzinfo] = None) -> Tuple[datetime, datetime]:
    """Half-open [start, end) interval covering one local calendar day."""
    zone = zone or tz.tzlocal()
    start = datetime(day.year, day.month, day.day, tzinfo=zone)
    nxt = day + timedelta(days=1)
    end = datetime(nxt.year, nxt.month, nxt.day, tzinfo=zone)
    return start, end


def truncate_to_minute(dt: datetime) -> datetime:
    return dt.replace(second=0, microsecond=0)


def epoch_minutes(dt: datetime) -> int:
    """Whole minutes since the Unix epoch (naive values are taken as local)."""
    return int(dt.timestamp()) // 60


def same_minute(a: datetime, b: datetime) -> bool:
    """True when both instants fall in the same absolute minute."""
    return epoch_minutes(a) == epoch_minutes(b)
