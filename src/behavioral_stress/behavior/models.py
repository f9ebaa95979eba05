"""Pydantic models for the behavioral stress subsystem.

These models represent:
- Rolling-window behavioral metric snapshots (mouse, keyboard, scroll)
- Robust per-metric baselines (median + MAD) and their daily history
- Calibration session state shared through the key-value store
- Stress scores and read-only diagnostics
"""

from __future__ import annotations

import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from behavioral_stress.models import StressLevel, StressSeverity


def _finite_or_zero(value: Any) -> float:
    """Sanitise a raw numeric input: ``None``, NaN and ±inf become ``0.0``."""
    if value is None or isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


# ── Metric keys ───────────────────────────────────────────────


class MetricKey(str, Enum):
    """Every numeric field of :class:`BehavioralMetrics`, as ``group.field``."""

    MOVEMENT_VELOCITY = "mouse.movement_velocity"
    MOVEMENT_ACCELERATION = "mouse.movement_acceleration"
    MOUSE_JITTER = "mouse.mouse_jitter"
    CLICK_FREQUENCY = "mouse.click_frequency_per_min"
    MULTI_CLICK_RATE = "mouse.multi_click_rate_per_min"
    PATH_EFFICIENCY = "mouse.path_efficiency"
    PAUSE_RATIO = "mouse.pause_ratio"
    MOUSE_SCROLL_VELOCITY = "mouse.scroll_velocity"
    TYPING_ERROR_RATE = "keyboard.typing_error_rate"
    TYPING_SPEED = "keyboard.typing_speed_per_min"
    PAUSE_REGULARITY = "keyboard.pause_regularity"
    AVG_PAUSE_DURATION = "keyboard.avg_pause_duration"
    SCROLL_VELOCITY = "scroll.velocity"

    @property
    def group(self) -> str:
        return self.value.split(".", 1)[0]

    @property
    def field(self) -> str:
        return self.value.split(".", 1)[1]


# ── Metric snapshots ─────────────────────────────────────────


class _SanitisedGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    @field_validator("*", mode="before")
    @classmethod
    def _sanitise(cls, value: Any, info: Any) -> Any:
        if info.field_name == "rage_click_detected":
            return bool(value)
        return _finite_or_zero(value)


class MouseMetrics(_SanitisedGroup):
    movement_velocity: float = 0.0  # px/s
    movement_acceleration: float = 0.0  # px/s²
    mouse_jitter: float = 0.0  # mean |jerk|, px/s³
    click_frequency_per_min: float = 0.0
    multi_click_rate_per_min: float = 0.0
    path_efficiency: float = Field(1.0, ge=0.0, le=1.0)
    pause_ratio: float = Field(0.0, ge=0.0, le=1.0)
    scroll_velocity: float = 0.0  # px/s
    rage_click_detected: bool = False

    @field_validator("path_efficiency", "pause_ratio", mode="before")
    @classmethod
    def _clamp_ratio(cls, value: Any) -> float:
        return min(1.0, max(0.0, _finite_or_zero(value)))


class KeyboardMetrics(_SanitisedGroup):
    typing_error_rate: float = 0.0  # backspaces per 10 keystrokes
    typing_speed_per_min: float = 0.0
    pause_regularity: float = 0.0  # coefficient of variation
    avg_pause_duration: float = 0.0  # seconds


class ScrollMetrics(_SanitisedGroup):
    velocity: float = 0.0  # px/s


class BehavioralMetrics(BaseModel):
    """Immutable snapshot of the trailing metric window."""

    model_config = ConfigDict(frozen=True)

    mouse: MouseMetrics = Field(default_factory=MouseMetrics)
    keyboard: KeyboardMetrics = Field(default_factory=KeyboardMetrics)
    scroll: ScrollMetrics = Field(default_factory=ScrollMetrics)
    timestamp: float = 0.0

    @field_validator("timestamp", mode="before")
    @classmethod
    def _sanitise_timestamp(cls, value: Any) -> float:
        return _finite_or_zero(value)

    def value(self, key: MetricKey) -> float:
        return float(getattr(getattr(self, key.group), key.field))


# ── Baseline ─────────────────────────────────────────────────


class MetricStat(BaseModel):
    """Robust centre and spread of a single metric."""

    median: float = 0.0
    mad: float = 0.0


class MouseBaseline(BaseModel):
    movement_velocity: MetricStat = Field(default_factory=MetricStat)
    movement_acceleration: MetricStat = Field(default_factory=MetricStat)
    mouse_jitter: MetricStat = Field(default_factory=MetricStat)
    click_frequency_per_min: MetricStat = Field(default_factory=MetricStat)
    multi_click_rate_per_min: MetricStat = Field(default_factory=MetricStat)
    path_efficiency: MetricStat = Field(default_factory=MetricStat)
    pause_ratio: MetricStat = Field(default_factory=MetricStat)
    scroll_velocity: MetricStat = Field(default_factory=MetricStat)


class KeyboardBaseline(BaseModel):
    typing_error_rate: MetricStat = Field(default_factory=MetricStat)
    typing_speed_per_min: MetricStat = Field(default_factory=MetricStat)
    pause_regularity: MetricStat = Field(default_factory=MetricStat)
    avg_pause_duration: MetricStat = Field(default_factory=MetricStat)


class ScrollBaseline(BaseModel):
    velocity: MetricStat = Field(default_factory=MetricStat)


class BaselineContext(BaseModel):
    """Coarse circadian context captured when a baseline is created."""

    time_of_day: str = "unknown"  # morning | afternoon | evening | night
    hour: int = 0
    day_of_week: int = 0  # Monday = 0


class BaselinePreset(BaseModel):
    """A baseline without provenance, e.g. a population default."""

    mouse: MouseBaseline = Field(default_factory=MouseBaseline)
    keyboard: KeyboardBaseline = Field(default_factory=KeyboardBaseline)
    scroll: ScrollBaseline = Field(default_factory=ScrollBaseline)

    def stat(self, key: MetricKey) -> MetricStat:
        return getattr(getattr(self, key.group), key.field)


class BaselineHistoryEntry(BaseModel):
    date: str  # YYYY-MM-DD
    baseline: BaselinePreset
    timestamp: float


class Baseline(BaselinePreset):
    """Personal baseline produced by a completed calibration session.

    Replaced wholesale on recalibration and read-only while scoring.
    """

    timestamp: float
    context: BaselineContext = Field(default_factory=BaselineContext)
    history: list[BaselineHistoryEntry] = Field(default_factory=list)


# ── Calibration ──────────────────────────────────────────────


class CalibrationPhase(str, Enum):
    IDLE = "idle"
    CALIBRATING = "calibrating"
    COMPLETE = "complete"


class CalibrationState(BaseModel):
    """Calibration session as persisted for resumption by any instance."""

    is_calibrating: bool = False
    start_time: float | None = None
    progress: float = Field(0.0, ge=0.0, le=100.0)
    session_id: str | None = None
    collected_samples: list[BehavioralMetrics] = Field(default_factory=list)


# ── Stress score ─────────────────────────────────────────────


class StressScore(BaseModel):
    """Per-tick output of the stress scorer."""

    mouse: float = 0.0
    keyboard: float = 0.0
    combined: float = 0.0
    level: StressLevel = StressLevel.NORMAL
    severity: StressSeverity = StressSeverity.NONE
    percentage: float = Field(0.0, ge=0.0, le=100.0)
    should_intervene: bool = False
    timestamp: float = 0.0
    metrics: BehavioralMetrics | None = None


# ── Diagnostics ──────────────────────────────────────────────


class KeyStatistic(BaseModel):
    key: str
    count: int
    frequency: float  # presses per minute


class ZoneStatistic(BaseModel):
    """Share of pointer samples in one cell of the 3×3 viewport grid.

    Zones are numbered row-major: 0 top-left … 8 bottom-right.
    """

    zone: int
    count: int
    percentage: float


class CapturedEvent(BaseModel):
    """Drain-style export record for forwarding raw activity elsewhere."""

    type: str  # "pointer_velocity" | "key_pause"
    value: float
    timestamp: float


class ActivitySummary(BaseModel):
    """Secondary signals collected alongside the scored metrics."""

    direction_changes: int = 0
    error_bursts: int = 0
    scroll_bursts: int = 0
    scroll_direction_changes: int = 0
    scroll_stops: int = 0
    mean_key_hold: float = 0.0
    mean_inter_key_interval: float = 0.0
    rage_click_detected: bool = False
