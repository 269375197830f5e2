"""
test_config.py - Configuration loading tests.

Usage: pytest test_config.py -q
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import date

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import ReconcileConfig
from logging_config import level_from_env
from models import Category, ReconcileWindow

ENV_NAMES = [
    "RECON_WINDOW_MINUTES",
    "RECON_PAYOUT_TOLERANCE",
    "RECON_ADJUSTMENT_WINDOW_MINUTES",
    "RECON_COUNTRY_CODE",
    "RECON_NATIONAL_NUMBER_LENGTH",
    "RECON_LOOKBACK_DAYS",
    "RECON_DEFAULT_CATEGORY",
    "RECON_TARGET_CATEGORIES",
    "RECON_ADJUSTMENT_CATEGORIES",
    "RECON_DURATION_TOLERANCE_SECONDS",
    "RECON_ASSIGNMENT",
    "RECON_WRITE_RETRIES",
    "RECON_STORE_FILE",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    config = ReconcileConfig.from_env(dotenv=False)

    assert config.window_minutes == 120
    assert config.full_day_minutes == 1440
    assert config.adjustment_window_minutes == 30
    assert config.payout_tolerance == 0.01
    assert config.lookback_days == 10
    assert config.default_category == Category.STATIC
    assert config.duration_tolerance_seconds is None
    assert config.adjustment_categories == [Category.STATIC]
    assert config.assignment == "greedy"


def test_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RECON_WINDOW_MINUTES", "30")
    monkeypatch.setenv("RECON_DEFAULT_CATEGORY", "api")
    monkeypatch.setenv("RECON_TARGET_CATEGORIES", "TA48aa3e3f=STATIC, TA99=api")
    monkeypatch.setenv("RECON_DURATION_TOLERANCE_SECONDS", "45")
    monkeypatch.setenv("RECON_ASSIGNMENT", "global")
    monkeypatch.setenv("RECON_COUNTRY_CODE", "+44")
    monkeypatch.setenv("RECON_ADJUSTMENT_CATEGORIES", "static, api")

    config = ReconcileConfig.from_env(dotenv=False)

    assert config.window_minutes == 30
    assert config.default_category == Category.API
    assert config.target_categories == {"TA48aa3e3f": Category.STATIC, "TA99": Category.API}
    assert config.duration_tolerance_seconds == 45
    assert config.assignment == "global"
    assert config.country_code == "44"
    assert config.adjustment_categories == [Category.STATIC, Category.API]


@pytest.mark.parametrize(
    "name, value",
    [
        ("RECON_WINDOW_MINUTES", "soon"),
        ("RECON_WINDOW_MINUTES", "0"),
        ("RECON_ASSIGNMENT", "random"),
        ("RECON_TARGET_CATEGORIES", "TA1"),
        ("RECON_DEFAULT_CATEGORY", "PREMIUM"),
        ("RECON_ADJUSTMENT_CATEGORIES", "STATIC,PREMIUM"),
    ],
)
def test_invalid_env_raises_value_error(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        ReconcileConfig.from_env(dotenv=False)


def test_dotenv_file_is_honoured(tmp_path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text("RECON_LOOKBACK_DAYS=3\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)
    # load_dotenv writes into os.environ; keep that out of other tests.
    monkeypatch.setattr(os, "environ", dict(os.environ))

    config = ReconcileConfig.from_env()

    assert config.lookback_days == 3


def test_past_days_window_ends_yesterday() -> None:
    window = ReconcileWindow.past_days(10, today=date(2025, 12, 17))
    assert window.start == date(2025, 12, 7)
    assert window.end == date(2025, 12, 16)


def test_expanded_window_adds_boundary_days() -> None:
    window = ReconcileWindow.single_day(date(2025, 12, 16)).expanded(1)
    assert (window.start, window.end) == (date(2025, 12, 15), date(2025, 12, 17))


def test_window_rejects_reversed_dates() -> None:
    with pytest.raises(ValueError):
        ReconcileWindow(start=date(2025, 12, 17), end=date(2025, 12, 16))


@pytest.mark.parametrize("raw, expected", [("", logging.INFO), ("debug", logging.DEBUG), ("30", 30), ("loud", logging.INFO)])
def test_log_level_from_env(monkeypatch: pytest.MonkeyPatch, raw: str, expected: int) -> None:
    monkeypatch.setenv("RECON_LOG_LEVEL", raw)
    assert level_from_env() == expected
