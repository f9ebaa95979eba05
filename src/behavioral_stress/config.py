"""Centralised application settings loaded from environment / .env file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{_PROJECT_ROOT / 'data' / 'behavioral_stress.db'}"

# Calibration length shared by every component (seconds).
BASELINE_DURATION_SECONDS = 3 * 60

# Rolling aggregation window used by the feature extractor (seconds).
METRIC_WINDOW_SECONDS = 60

SENSITIVITIES = ("low", "medium", "high")

Sensitivity = Literal["low", "medium", "high"]


class Settings(BaseSettings):
    """All runtime configuration for the behavioral stress monitor.

    Values are read from environment variables first, then from a *.env* file
    located at the project root.  Every variable lives in a flat namespace
    (e.g. ``SENSITIVITY=high``, ``METRIC_WINDOW_SECONDS=30``).
    """

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Detection ─────────────────────────────────────────────
    sensitivity: Sensitivity = "medium"
    metric_window_seconds: float = METRIC_WINDOW_SECONDS
    detection_interval_seconds: float = 1.0
    score_history_size: int = 100

    # ── Calibration ───────────────────────────────────────────
    calibration_duration_seconds: float = BASELINE_DURATION_SECONDS
    calibration_min_samples: int = 5
    calibration_tick_seconds: float = 1.0

    # ── Inactivity decay ──────────────────────────────────────
    decay_check_interval_seconds: float = 5.0
    inactivity_decay_seconds: float = 30.0

    # ── Pointer zones ─────────────────────────────────────────
    viewport_width: int = 1920
    viewport_height: int = 1080

    # ── Persistence ───────────────────────────────────────────
    database_url: str = _DEFAULT_DB_URL
    storage_key_prefix: str = "bstress_"

    # ── Logging ───────────────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("sensitivity", mode="before")
    @classmethod
    def _fallback_sensitivity(cls, value: object) -> str:
        return normalise_sensitivity(value)


def normalise_sensitivity(value: object) -> Sensitivity:
    """Return *value* as a known sensitivity, falling back to ``medium``."""
    if isinstance(value, str) and value.strip().lower() in SENSITIVITIES:
        return value.strip().lower()  # type: ignore[return-value]
    logger.warning("config.unknown_sensitivity", value=value, fallback="medium")
    return "medium"


@lru_cache
def get_settings() -> Settings:
    """Return a cached :class:`Settings` singleton."""
    return Settings()
