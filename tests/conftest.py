"""Shared pytest fixtures."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from behavioral_stress.behavior.models import (
    Baseline,
    BaselinePreset,
    BehavioralMetrics,
    MetricKey,
)
from behavioral_stress.config import Settings
from behavioral_stress.storage.base import KeyValueStore, MemoryStore, StorageUnavailableError

START = 10_000.0


class FakeClock:
    """Deterministic time source; advance it explicitly."""

    def __init__(self, start: float = START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FailingStore(KeyValueStore):
    """Store whose backend is permanently unreachable."""

    def __init__(self) -> None:
        self.attempts = 0

    async def get(self, key: str) -> Any | None:
        self.attempts += 1
        raise StorageUnavailableError("backend offline")

    async def set(self, key: str, value: Any) -> bool:
        self.attempts += 1
        raise StorageUnavailableError("backend offline")

    async def remove(self, key: str) -> bool:
        self.attempts += 1
        raise StorageUnavailableError("backend offline")


# (median, MAD) per metric for a typical calm user.
BASELINE_VALUES: dict[MetricKey, tuple[float, float]] = {
    MetricKey.MOVEMENT_VELOCITY: (320.0, 20.0),
    MetricKey.MOVEMENT_ACCELERATION: (90.0, 10.0),
    MetricKey.MOUSE_JITTER: (25.0, 5.0),
    MetricKey.CLICK_FREQUENCY: (18.0, 4.0),
    MetricKey.MULTI_CLICK_RATE: (1.0, 0.4),
    MetricKey.PATH_EFFICIENCY: (0.9, 0.05),
    MetricKey.PAUSE_RATIO: (0.2, 0.05),
    MetricKey.MOUSE_SCROLL_VELOCITY: (200.0, 30.0),
    MetricKey.TYPING_ERROR_RATE: (1.0, 0.25),
    MetricKey.TYPING_SPEED: (220.0, 20.0),
    MetricKey.PAUSE_REGULARITY: (0.2, 0.05),
    MetricKey.AVG_PAUSE_DURATION: (0.35, 0.05),
    MetricKey.SCROLL_VELOCITY: (200.0, 30.0),
}

# Deviations in MAD units describing clearly stressed behaviour.
HIGH_STRESS_PROFILE: dict[MetricKey, float] = {
    MetricKey.CLICK_FREQUENCY: 3.5,
    MetricKey.MULTI_CLICK_RATE: 4.0,
    MetricKey.MOVEMENT_VELOCITY: 3.0,
    MetricKey.MOVEMENT_ACCELERATION: 3.0,
    MetricKey.MOUSE_JITTER: 4.0,
    MetricKey.MOUSE_SCROLL_VELOCITY: 3.2,
    MetricKey.TYPING_ERROR_RATE: 3.0,
    MetricKey.PAUSE_REGULARITY: 2.5,
    MetricKey.AVG_PAUSE_DURATION: 2.8,
    MetricKey.PATH_EFFICIENCY: -1.5,
    MetricKey.PAUSE_RATIO: 1.2,
}


def build_preset(values: dict[MetricKey, tuple[float, float]] = BASELINE_VALUES) -> BaselinePreset:
    data: dict[str, dict[str, dict[str, float]]] = {"mouse": {}, "keyboard": {}, "scroll": {}}
    for key, (median, mad) in values.items():
        data[key.group][key.field] = {"median": median, "mad": mad}
    return BaselinePreset.model_validate(data)


def build_metrics(
    deviations: dict[MetricKey, float] | None = None,
    *,
    timestamp: float = START,
) -> BehavioralMetrics:
    """Metrics sitting at the baseline median, shifted by *deviations* MADs."""
    deviations = deviations or {}
    data: dict[str, Any] = {"mouse": {}, "keyboard": {}, "scroll": {}, "timestamp": timestamp}
    for key, (median, mad) in BASELINE_VALUES.items():
        data[key.group][key.field] = median + deviations.get(key, 0.0) * mad
    return BehavioralMetrics.model_validate(data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def preset() -> BaselinePreset:
    return build_preset()


@pytest.fixture
def baseline(preset: BaselinePreset) -> Baseline:
    return Baseline(
        mouse=preset.mouse,
        keyboard=preset.keyboard,
        scroll=preset.scroll,
        timestamp=START,
    )


@pytest.fixture
def make_metrics() -> Callable[..., BehavioralMetrics]:
    return build_metrics


@pytest.fixture
def memory_store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def failing_store() -> FailingStore:
    return FailingStore()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        sensitivity="medium",
        calibration_duration_seconds=10,
        calibration_min_samples=3,
        detection_interval_seconds=0.01,
        calibration_tick_seconds=0.01,
        decay_check_interval_seconds=0.05,
    )
