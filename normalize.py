"""
normalize.py - Data normalization module.

Core normalizers:
    normalize_caller_id(raw)        -> canonical "+<digits>" or None
    parse_timestamp(value)          -> naive feed-local datetime or None
    normalize_timestamp(value)      -> "YYYY-MM-DDTHH:MM:SS" or None
    normalize_amount(value)         -> non-negative float rounded to 2 decimals
    normalize_signed_amount(value)  -> signed float rounded to 2 decimals

Design principles:
    - SAME normalization on BOTH feeds
    - Pure transformations, no I/O
    - Invalid input degrades to None / 0.0, never raises
    - Timestamps keep the wall clock the feed recorded; zone suffixes are
      dropped, never applied
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from typing import Any, Optional

from dateutil import parser as dateparser

from logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_COUNTRY_CODE = "1"
DEFAULT_NATIONAL_LENGTH = 10

CANONICAL_FORMAT = "%Y-%m-%dT%H:%M:%S"

_NON_DIGITS = re.compile(r"\D")

_ISO_DATETIME = re.compile(r"^(\d{4})-(\d{2})-(\d{2})[T ](\d{2}):(\d{2})(?::(\d{2}))?")
_US_DATETIME = re.compile(
    r"^(\d{1,2})/(\d{1,2})/(\d{2,4})\s+(\d{1,2}):(\d{2})(?::(\d{2}))?\s*(AM|PM)?"
    r"\s*(?:EST|EDT|CST|CDT|MST|MDT|PST|PDT|UTC|GMT)?$",
    re.IGNORECASE,
)
_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_US_DATE = re.compile(r"^(\d{1,2})/(\d{1,2})/(\d{4})$")
_DMY_DATE = re.compile(r"^(\d{1,2})-(\d{1,2})-(\d{4})$")

_EMPTY_MARKERS = {"n/a", "na", "none", "null", "unknown", "nan"}


def normalize_caller_id(
    raw: Any,
    country_code: str = DEFAULT_COUNTRY_CODE,
    national_length: int = DEFAULT_NATIONAL_LENGTH,
) -> Optional[str]:
    """Canonicalize a caller phone number.

    Rules, in order: empty -> None; already "+..." -> unchanged; strip
    non-digits; country code + national number -> "+<digits>"; bare
    national number -> "+<country><digits>"; any other digits -> "+<digits>";
    no digits -> None.
    """
    if raw is None:
        return None

    text = str(raw).strip()
    if not text:
        return None

    digits = _NON_DIGITS.sub("", text)
    if not digits:
        logger.debug("normalize_caller_id | rejected_no_digits | raw=%r", raw)
        return None

    if text.startswith("+"):
        return text

    if len(digits) == len(country_code) + national_length and digits.startswith(country_code):
        normalized = f"+{digits}"
    elif len(digits) == national_length:
        normalized = f"+{country_code}{digits}"
    else:
        normalized = f"+{digits}"
        logger.debug(
            "normalize_caller_id | last_resort | raw=%r | digits=%s | normalized=%r",
            raw,
            len(digits),
            normalized,
        )

    return normalized


def same_caller(
    raw_a: Any,
    raw_b: Any,
    country_code: str = DEFAULT_COUNTRY_CODE,
    national_length: int = DEFAULT_NATIONAL_LENGTH,
) -> bool:
    """Two raw caller ids are the same caller iff their canonical forms match."""
    a = normalize_caller_id(raw_a, country_code, national_length)
    if a is None:
        return False
    return a == normalize_caller_id(raw_b, country_code, national_length)


def _to_24h(hours: int, meridiem: str) -> int:
    meridiem = meridiem.upper()
    if meridiem == "PM" and hours != 12:
        return hours + 12
    if meridiem == "AM" and hours == 12:
        return 0
    return hours


def _expand_year(year: int) -> int:
    if year >= 100:
        return year
    return 2000 + year if year <= 50 else 1900 + year


def _parse_known_formats(text: str) -> Optional[datetime]:
    match = _ISO_DATETIME.match(text)
    if match:
        year, month, day, hours, minutes, seconds = match.groups()
        return datetime(
            int(year), int(month), int(day), int(hours), int(minutes), int(seconds or 0)
        )

    match = _US_DATETIME.match(text)
    if match:
        month, day, year, hours, minutes, seconds, meridiem = match.groups()
        hour_value = int(hours)
        if meridiem:
            hour_value = _to_24h(hour_value, meridiem)
        return datetime(
            _expand_year(int(year)),
            int(month),
            int(day),
            hour_value,
            int(minutes),
            int(seconds or 0),
        )

    match = _ISO_DATE.match(text)
    if match:
        year, month, day = match.groups()
        return datetime(int(year), int(month), int(day))

    match = _US_DATE.match(text)
    if match:
        month, day, year = match.groups()
        return datetime(int(year), int(month), int(day))

    match = _DMY_DATE.match(text)
    if match:
        day, month, year = match.groups()
        return datetime(int(year), int(month), int(day))

    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse a feed timestamp into a naive datetime in the feed's wall clock."""
    if value is None:
        return None

    if isinstance(value, datetime):
        return value.replace(tzinfo=None)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)

    text = str(value).strip()
    if not text or text.lower() in _EMPTY_MARKERS:
        return None
    if not any(char.isdigit() for char in text):
        logger.debug("parse_timestamp | rejected_no_digits | raw=%r", text)
        return None
    if re.fullmatch(r"\d+", text):
        logger.debug("parse_timestamp | rejected_bare_number | raw=%r", text)
        return None

    try:
        parsed = _parse_known_formats(text)
        if parsed is not None:
            return parsed
    except ValueError as exc:
        logger.warning("parse_timestamp | invalid_component | raw=%r | error=%s", text, exc)
        return None

    try:
        parsed = dateparser.parse(text, dayfirst=False)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.warning(
            "parse_timestamp | parse_error=%s | raw=%r | fallback=None",
            type(exc).__name__,
            text,
        )
        return None

    if parsed is None:
        return None
    return parsed.replace(tzinfo=None)


def normalize_timestamp(value: Any) -> Optional[str]:
    """Normalize a feed timestamp to YYYY-MM-DDTHH:MM:SS (no zone conversion)."""
    parsed = parse_timestamp(value)
    if parsed is None:
        return None
    return parsed.strftime(CANONICAL_FORMAT)


def _parse_amount(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None

    cleaned = str(value).strip()
    if not cleaned or cleaned.lower() in _EMPTY_MARKERS:
        return None

    is_negative = (
        cleaned.startswith("-")
        or (cleaned.startswith("(") and cleaned.endswith(")"))
        or "-$" in cleaned
        or "$-" in cleaned
    )
    cleaned = (
        cleaned.replace("$", "")
        .replace("(", "")
        .replace(")", "")
        .replace(",", "")
        .replace("-", "")
        .strip()
    )
    if not cleaned:
        return None

    try:
        number = float(cleaned)
    except ValueError:
        return None

    if not math.isfinite(number):
        return None
    return -number if is_negative else number


def normalize_amount(value: Any) -> float:
    """Normalize a payout/revenue value into a non-negative 2-decimal float."""
    number = _parse_amount(value)
    if number is None:
        if value not in (None, ""):
            logger.warning("normalize_amount | parse_failed | raw=%r | fallback=0.0", value)
        return 0.0
    if number < 0:
        logger.warning("normalize_amount | negative=%r | fallback=0.0", value)
        return 0.0
    return round(number, 2)


def normalize_signed_amount(value: Any) -> float:
    """Normalize an adjustment amount, keeping its sign."""
    number = _parse_amount(value)
    if number is None:
        if value not in (None, ""):
            logger.warning("normalize_signed_amount | parse_failed | raw=%r | fallback=0.0", value)
        return 0.0
    return round(number, 2)
