"""
config.py - Engine configuration.

Defaults mirror the production deployment. `ReconcileConfig.from_env()`
reads RECON_* variables (a local .env file is honoured) and validates them.
"""

from __future__ import annotations

import os
from typing import Literal, Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from logging_config import get_logger
from models import Category

logger = get_logger(__name__)


class ReconcileConfig(BaseModel):
    """Tunable thresholds for matching and the driver."""

    model_config = ConfigDict(extra="ignore")

    # Same-day match window. Cross-midnight pairs get `full_day_minutes`.
    window_minutes: float = Field(default=120.0, gt=0)
    full_day_minutes: float = Field(default=24 * 60, gt=0)

    payout_tolerance: float = Field(default=0.01, ge=0)
    # Score multiplier for amount-confirmed pairs (lower score wins).
    exact_payout_factor: float = Field(default=0.1, gt=0)
    # Minutes of penalty per currency unit of payout disagreement.
    payout_penalty_factor: float = Field(default=10.0, ge=0)

    adjustment_window_minutes: float = Field(default=30.0, gt=0)
    adjustment_tolerance: float = Field(default=0.01, ge=0)
    adjustments_require_link: bool = True
    # Categories whose calls receive adjustments. Empty means every category.
    adjustment_categories: list[Category] = Field(default_factory=lambda: [Category.STATIC])

    country_code: str = "1"
    national_number_length: int = Field(default=10, gt=0)

    lookback_days: int = Field(default=10, ge=1)
    boundary_days: int = Field(default=1, ge=0)

    default_category: Category = Category.STATIC
    target_categories: dict[str, Category] = Field(default_factory=dict)

    # None disables the duration gate.
    duration_tolerance_seconds: Optional[int] = Field(default=None, ge=0)

    assignment: Literal["greedy", "global"] = "greedy"
    write_retries: int = Field(default=1, ge=0)
    store_path: str = "data/calls.json"

    @field_validator("country_code", mode="before")
    @classmethod
    def _digits_only(cls, value: object) -> str:
        text = "".join(ch for ch in str(value or "") if ch.isdigit())
        if not text:
            raise ValueError("country_code must contain at least one digit")
        return text

    @field_validator("adjustment_categories", mode="before")
    @classmethod
    def _parse_adjustment_categories(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip().upper() for part in value.split(",") if part.strip()]
        return [str(item).strip().upper() if isinstance(item, str) else item for item in value]

    @field_validator("target_categories", mode="before")
    @classmethod
    def _parse_target_categories(cls, value: object) -> dict[str, str]:
        if value is None or value == "":
            return {}
        if isinstance(value, dict):
            return {str(key).strip(): str(raw).strip().upper() for key, raw in value.items()}
        result: dict[str, str] = {}
        for pair in str(value).split(","):
            if not pair.strip():
                continue
            if "=" not in pair:
                raise ValueError(f"target mapping {pair.strip()!r} must look like id=CATEGORY")
            target_id, category = pair.split("=", 1)
            result[target_id.strip()] = category.strip().upper()
        return result

    @classmethod
    def from_env(cls, dotenv: bool = True) -> ReconcileConfig:
        """Build a config from RECON_* environment variables."""
        if dotenv:
            load_dotenv(find_dotenv(usecwd=True))

        env_map = {
            "window_minutes": "RECON_WINDOW_MINUTES",
            "payout_tolerance": "RECON_PAYOUT_TOLERANCE",
            "adjustment_window_minutes": "RECON_ADJUSTMENT_WINDOW_MINUTES",
            "country_code": "RECON_COUNTRY_CODE",
            "national_number_length": "RECON_NATIONAL_NUMBER_LENGTH",
            "lookback_days": "RECON_LOOKBACK_DAYS",
            "default_category": "RECON_DEFAULT_CATEGORY",
            "target_categories": "RECON_TARGET_CATEGORIES",
            "adjustment_categories": "RECON_ADJUSTMENT_CATEGORIES",
            "duration_tolerance_seconds": "RECON_DURATION_TOLERANCE_SECONDS",
            "assignment": "RECON_ASSIGNMENT",
            "write_retries": "RECON_WRITE_RETRIES",
            "store_path": "RECON_STORE_FILE",
        }
        values: dict[str, str] = {}
        for field_name, env_name in env_map.items():
            raw = os.getenv(env_name, "").strip()
            if raw:
                values[field_name] = raw
        if "default_category" in values:
            values["default_category"] = values["default_category"].upper()

        try:
            config = cls.model_validate(values)
        except ValidationError as exc:
            raise ValueError(f"Invalid RECON_* configuration: {exc}") from exc

        logger.debug(
            "config_loaded | overrides=%s | window_min=%s | adjustment_window_min=%s | lookback_days=%s",
            sorted(values),
            config.window_minutes,
            config.adjustment_window_minutes,
            config.lookback_days,
        )
        return config
