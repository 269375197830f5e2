"""
test_temporal.py - Temporal comparator tests.

Usage: pytest test_temporal.py -q
"""

from __future__ import annotations

import math
import os
import sys
from datetime import date, datetime

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from models import ReconcileWindow
from temporal import date_prefix, days_apart, in_window, minutes_apart, same_day, truncate_to_minute


def test_date_prefix_uses_recorded_date() -> None:
    assert date_prefix("2025-12-16T23:58:00") == "2025-12-16"
    assert date_prefix("2025-12-16T23:58:00-05:00") == "2025-12-16"
    assert date_prefix("12/16/2025 11:58 PM") == "2025-12-16"
    assert date_prefix(date(2025, 12, 16)) == "2025-12-16"
    assert date_prefix("garbage") is None
    assert date_prefix(None) is None


def test_calls_either_side_of_midnight_are_not_same_day() -> None:
    assert not same_day("2025-12-16T23:58:00", "2025-12-17T00:02:00")


def test_same_day_ignores_format_differences() -> None:
    assert same_day("2025-12-16T11:30:00", "12/16/2025 02:15 PM")


def test_same_day_with_unparsable_side_is_false() -> None:
    assert not same_day("2025-12-16T11:30:00", "")
    assert not same_day(None, None)


def test_days_apart() -> None:
    assert days_apart("2025-12-16T23:58:00", "2025-12-17T00:02:00") == 1
    assert days_apart("2025-12-17", "2025-12-14") == 3
    assert days_apart("2025-12-16", "bad") is None


def test_minutes_apart_is_symmetric_and_absolute() -> None:
    assert minutes_apart("2025-12-16T11:30:00", "2025-12-16T11:28:00") == 2.0
    assert minutes_apart("2025-12-16T11:28:00", "2025-12-16T11:30:00") == 2.0


def test_minutes_apart_across_midnight() -> None:
    assert minutes_apart("2025-12-16T23:58:00", "2025-12-17T00:02:00") == 4.0


def test_minutes_apart_truncates_seconds_on_request() -> None:
    assert minutes_apart("2025-12-16T11:30:59", "2025-12-16T11:28:01") == pytest.approx(178 / 60.0)
    assert minutes_apart("2025-12-16T11:30:59", "2025-12-16T11:28:01", truncate=True) == 2.0


def test_minutes_apart_unparsable_is_infinite() -> None:
    assert math.isinf(minutes_apart("2025-12-16T11:30:00", "not a time"))


def test_truncate_to_minute() -> None:
    assert truncate_to_minute("2025-12-16T11:30:59") == datetime(2025, 12, 16, 11, 30)
    assert truncate_to_minute("nope") is None


def test_in_window() -> None:
    window = ReconcileWindow(start=date(2025, 12, 10), end=date(2025, 12, 16))
    assert in_window("2025-12-10T00:00:00", window)
    assert in_window("2025-12-16T23:59:59", window)
    assert not in_window("2025-12-17T00:00:00", window)
    assert not in_window("unknown", window)
