"""
temporal.py - Same-day and minute-distance comparisons between feed timestamps.

Both feeds store local wall-clock time without an explicit offset. Day
comparison therefore uses the calendar date as recorded (the 10-character
YYYY-MM-DD prefix of the canonical string). Converting through UTC would
report "different day" for calls between midnight and the feed's offset.

All functions are pure and never raise on bad input.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Any, Optional

from models import ReconcileWindow
from normalize import normalize_timestamp, parse_timestamp

_DATE_PREFIX = re.compile(r"^\d{4}-\d{2}-\d{2}")


def date_prefix(value: Any) -> Optional[str]:
    """Return the recorded calendar date (YYYY-MM-DD) of a feed timestamp."""
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.strftime("%Y-%m-%d")

    text = str(value).strip()
    if _DATE_PREFIX.match(text):
        return text[:10]

    normalized = normalize_timestamp(text)
    return normalized[:10] if normalized else None


def same_day(ts1: Any, ts2: Any) -> bool:
    """Whether two timestamps fall on the same recorded calendar date."""
    day1 = date_prefix(ts1)
    day2 = date_prefix(ts2)
    if day1 is None or day2 is None:
        return False
    return day1 == day2


def days_apart(ts1: Any, ts2: Any) -> Optional[int]:
    """Absolute calendar-day distance between two recorded dates."""
    day1 = date_prefix(ts1)
    day2 = date_prefix(ts2)
    if day1 is None or day2 is None:
        return None
    try:
        return abs((date.fromisoformat(day1) - date.fromisoformat(day2)).days)
    except ValueError:
        return None


def truncate_to_minute(value: Any) -> Optional[datetime]:
    """Parse a timestamp and zero its seconds."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.replace(second=0, microsecond=0)


def minutes_apart(t1: Any, t2: Any, truncate: bool = False) -> float:
    """Absolute distance in minutes; +inf when either side fails to parse."""
    if truncate:
        d1 = truncate_to_minute(t1)
        d2 = truncate_to_minute(t2)
    else:
        d1 = parse_timestamp(t1)
        d2 = parse_timestamp(t2)
    if d1 is None or d2 is None:
        return math.inf
    return abs((d1 - d2).total_seconds()) / 60.0


def in_window(value: Any, window: ReconcileWindow) -> bool:
    """Whether a timestamp's recorded date lies inside the window."""
    day = date_prefix(value)
    if day is None:
        return False
    try:
        return window.contains_date(date.fromisoformat(day))
    except ValueError:
        return False
