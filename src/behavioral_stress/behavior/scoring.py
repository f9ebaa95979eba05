"""Stress scoring — deviation from baseline to a smoothed, hysteresis-filtered level.

Scoring rules
~~~~~~~~~~~~~
1. Each metric gets a *directional* z-score against its baseline median and
   MAD: only deviations in the stress direction count, z is capped at 4
   and a per-metric minimum threshold is subtracted.
2. Mouse and keyboard channels are weighted means of their z-scores.  The
   mouse channel always divides by the full weight sum and adds two
   penalties (path efficiency below baseline, pause ratio above it).
3. ``raw = 0.7 × mouse + 0.3 × keyboard`` is smoothed with an EMA
   (α = 0.3) into ``combined``.
4. ``combined`` is classified against sensitivity-dependent thresholds.
   A level change needs three consecutive agreeing ticks.
5. ``combined`` maps to a 0–100 percentage in three regimes, and a
   severity policy maps ``(percentage, level)`` to a severity.
"""

from __future__ import annotations

import math
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

import structlog

from behavioral_stress.behavior.models import BehavioralMetrics, BaselinePreset, MetricKey, StressScore
from behavioral_stress.behavior.severity import SeverityPolicy, derive_stress_severity
from behavioral_stress.config import Sensitivity, normalise_sensitivity
from behavioral_stress.models import MetricDirection, StressLevel, StressTrend

logger = structlog.get_logger(__name__)


# ── Weight table ──────────────────────────────────────────────


@dataclass(frozen=True)
class MetricWeight:
    key: MetricKey
    weight: float
    minimum_threshold: float
    direction: MetricDirection = MetricDirection.HIGHER


MOUSE_WEIGHTS: tuple[MetricWeight, ...] = (
    MetricWeight(MetricKey.CLICK_FREQUENCY, 0.15, 0.2),
    MetricWeight(MetricKey.MULTI_CLICK_RATE, 0.15, 0.2),
    MetricWeight(MetricKey.MOVEMENT_VELOCITY, 0.10, 0.1),
    MetricWeight(MetricKey.MOVEMENT_ACCELERATION, 0.10, 0.1),
    MetricWeight(MetricKey.MOUSE_JITTER, 0.10, 0.15),
    MetricWeight(MetricKey.MOUSE_SCROLL_VELOCITY, 0.10, 0.1),
)

KEYBOARD_WEIGHTS: tuple[MetricWeight, ...] = (
    MetricWeight(MetricKey.TYPING_ERROR_RATE, 0.50, 0.2),
    MetricWeight(MetricKey.TYPING_SPEED, 0.25, 0.15),
    MetricWeight(MetricKey.PAUSE_REGULARITY, 0.15, 0.1),
    MetricWeight(MetricKey.AVG_PAUSE_DURATION, 0.10, 0.1),
)


def _validate_weights(table: tuple[MetricWeight, ...], group: str) -> float:
    keys = [w.key for w in table]
    if len(set(keys)) != len(keys):
        raise ValueError(f"duplicate metric in {group} weight table")
    for w in table:
        if w.key.group != group:
            raise ValueError(f"{w.key.value} does not belong to the {group} channel")
        if not (math.isfinite(w.weight) and w.weight > 0):
            raise ValueError(f"weight for {w.key.value} must be positive")
        if w.minimum_threshold < 0:
            raise ValueError(f"minimum threshold for {w.key.value} must be non-negative")
    return sum(w.weight for w in table)


MOUSE_WEIGHT_SUM = _validate_weights(MOUSE_WEIGHTS, "mouse")
KEYBOARD_WEIGHT_SUM = _validate_weights(KEYBOARD_WEIGHTS, "keyboard")

# ── Constants ─────────────────────────────────────────────────

Z_CAP = 4.0
MOUSE_SHARE = 0.7
KEYBOARD_SHARE = 0.3
SMOOTHING_ALPHA = 0.3
HYSTERESIS_TICKS = 3
TREND_SLOPE = 0.1

SENSITIVITY_THRESHOLDS: dict[str, float] = {
    "low": 3.5,
    "medium": 2.8,
    "high": 2.2,
}

_PATH_PENALTY_GAIN = 2.0
_PATH_PENALTY_CAP = 1.0
_PATH_PENALTY_WEIGHT = 0.1
_PAUSE_PENALTY_GAIN = 2.0
_PAUSE_PENALTY_CAP = 0.5

_MIN_MODERATE_THRESHOLD = 0.8
_HIGH_REFERENCE_FACTOR = 1.5

_DECAY_WINDOW_PER_INTERVAL = 5.0  # seconds kept per inactivity interval
_MAX_DECAY_WINDOW = 30.0


def safe_spread(spread: float, baseline_value: float) -> float:
    """Spread to divide by: *spread* if positive, else ``max(|baseline| × 0.25, 0.1)``."""
    if spread > 0 and math.isfinite(spread):
        return spread
    return max(abs(baseline_value) * 0.25, 0.1)


def directional_z(
    value: float,
    baseline_value: float,
    spread: float,
    direction: MetricDirection = MetricDirection.HIGHER,
    minimum_threshold: float = 0.0,
) -> float:
    """One-sided, capped z-score above *minimum_threshold*; ``0.0`` otherwise."""
    if not (math.isfinite(value) and math.isfinite(baseline_value)):
        return 0.0
    if direction == MetricDirection.HIGHER:
        difference = value - baseline_value
    else:
        difference = baseline_value - value
    if difference <= 0:
        return 0.0
    capped = min(difference / safe_spread(spread, baseline_value), Z_CAP)
    if capped <= minimum_threshold:
        return 0.0
    return capped - minimum_threshold


def _weighted_channel(
    metrics: BehavioralMetrics,
    baseline: BaselinePreset,
    table: tuple[MetricWeight, ...],
    divisor: float,
) -> float:
    total = 0.0
    for w in table:
        stat = baseline.stat(w.key)
        z = directional_z(metrics.value(w.key), stat.median, stat.mad, w.direction, w.minimum_threshold)
        if math.isfinite(z) and z > 0:
            total += z * w.weight
    return total / divisor


def mouse_channel(metrics: BehavioralMetrics, baseline: BaselinePreset) -> float:
    score = _weighted_channel(metrics, baseline, MOUSE_WEIGHTS, MOUSE_WEIGHT_SUM)

    efficiency = baseline.mouse.path_efficiency.median
    if metrics.mouse.path_efficiency < efficiency:
        delta = efficiency - metrics.mouse.path_efficiency
        score += min(_PATH_PENALTY_CAP, delta * _PATH_PENALTY_GAIN) * _PATH_PENALTY_WEIGHT

    pause_ratio = baseline.mouse.pause_ratio.median
    if metrics.mouse.pause_ratio > pause_ratio:
        delta = metrics.mouse.pause_ratio - pause_ratio
        score += min(_PAUSE_PENALTY_CAP, delta * _PAUSE_PENALTY_GAIN)

    return score


def keyboard_channel(metrics: BehavioralMetrics, baseline: BaselinePreset) -> float:
    return _weighted_channel(metrics, baseline, KEYBOARD_WEIGHTS, KEYBOARD_WEIGHT_SUM)


def moderate_threshold_for(high_threshold: float) -> float:
    return max(_MIN_MODERATE_THRESHOLD, high_threshold * 0.5)


def stress_percentage(score: float, high_threshold: float) -> float:
    """Map a combined score to 0–100 in three regimes.

    ``[0, moderate]`` → 0–50, ``(moderate, high)`` → 50–80 and
    ``[high, 1.5 × high]`` → 80–100.
    """
    score = max(0.0, score) if math.isfinite(score) else 0.0
    moderate = moderate_threshold_for(high_threshold)
    ceiling = high_threshold * _HIGH_REFERENCE_FACTOR

    if score <= moderate:
        return min(50.0, max(0.0, score / moderate * 50))
    if score >= high_threshold:
        extra = min(ceiling, score) - high_threshold
        span = max(0.001, ceiling - high_threshold)
        return min(100.0, 80 + extra / span * 20)
    ratio = (score - moderate) / max(0.001, high_threshold - moderate)
    return min(80.0, 50 + ratio * 30)


# ── Scorer ────────────────────────────────────────────────────


class StressScorer:
    """Stateful scorer: EMA smoothing, hysteresis, history and decay.

    Parameters
    ----------
    sensitivity : str
        ``low`` / ``medium`` / ``high``; unknown values fall back to medium.
    history_size : int
        Maximum number of scores retained (oldest evicted first).
    severity_policy : SeverityPolicy
        Maps ``(percentage, level)`` to a :class:`StressSeverity`.
    inactivity_seconds : float
        Idle time after the last scored tick before history decays.
    clock : Callable[[], float]
        Time source in seconds.
    """

    def __init__(
        self,
        sensitivity: Sensitivity | str = "medium",
        *,
        history_size: int = 100,
        severity_policy: SeverityPolicy = derive_stress_severity,
        inactivity_seconds: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._clock = clock
        self._severity_policy = severity_policy
        self._inactivity = float(inactivity_seconds)
        self._history: deque[StressScore] = deque(maxlen=max(1, history_size))
        self._sensitivity: Sensitivity = normalise_sensitivity(sensitivity)
        self._threshold = SENSITIVITY_THRESHOLDS[self._sensitivity]
        self._smoothed = 0.0
        self._level = StressLevel.NORMAL
        self._elevated_streak = 0
        self._normal_streak = 0
        self._last_scored_at = clock()

    # ── Properties ────────────────────────────────────────────

    @property
    def sensitivity(self) -> Sensitivity:
        return self._sensitivity

    @property
    def threshold(self) -> float:
        return self._threshold

    @property
    def moderate_threshold(self) -> float:
        return moderate_threshold_for(self._threshold)

    @property
    def level(self) -> StressLevel:
        return self._level

    @property
    def smoothed(self) -> float:
        return self._smoothed

    # ── Scoring ───────────────────────────────────────────────

    def calculate(
        self,
        metrics: BehavioralMetrics,
        baseline: BaselinePreset | None,
        now: float | None = None,
    ) -> StressScore:
        """Score one snapshot; a missing baseline yields a neutral score."""
        now = self._clock() if now is None else now
        if baseline is None:
            logger.debug("scorer.no_baseline")
            return StressScore(timestamp=now, metrics=metrics)

        mouse = mouse_channel(metrics, baseline)
        keyboard = keyboard_channel(metrics, baseline)
        raw = MOUSE_SHARE * mouse + KEYBOARD_SHARE * keyboard
        self._smoothed = SMOOTHING_ALPHA * raw + (1 - SMOOTHING_ALPHA) * self._smoothed

        previous = self._level
        raw_level = self._classify(self._smoothed)
        level = self._apply_hysteresis(raw_level)
        percentage = stress_percentage(self._smoothed, self._threshold)

        score = StressScore(
            mouse=mouse,
            keyboard=keyboard,
            combined=self._smoothed,
            level=level,
            severity=self._severity_policy(percentage, level),
            percentage=percentage,
            should_intervene=level == StressLevel.HIGH,
            timestamp=now,
            metrics=metrics,
        )
        self._history.append(score)
        self._last_scored_at = now

        logger.debug(
            "scorer.tick",
            raw=round(raw, 4),
            smoothed=round(self._smoothed, 4),
            raw_level=raw_level.value,
            level=level.value,
            elevated_streak=self._elevated_streak,
            normal_streak=self._normal_streak,
        )
        if level != previous:
            logger.info(
                "scorer.level_changed",
                previous=previous.value,
                level=level.value,
                percentage=round(percentage, 1),
            )
        return score

    def _classify(self, combined: float) -> StressLevel:
        if combined >= self._threshold:
            return StressLevel.HIGH
        if combined >= self.moderate_threshold:
            return StressLevel.MODERATE
        return StressLevel.NORMAL

    def _apply_hysteresis(self, raw_level: StressLevel) -> StressLevel:
        if raw_level == StressLevel.NORMAL:
            self._normal_streak += 1
            self._elevated_streak = 0
        else:
            self._elevated_streak += 1
            self._normal_streak = 0

        if self._elevated_streak >= HYSTERESIS_TICKS:
            self._level = raw_level
        elif self._normal_streak >= HYSTERESIS_TICKS:
            self._level = StressLevel.NORMAL
        return self._level

    # ── History ───────────────────────────────────────────────

    def get_history(self) -> list[StressScore]:
        return list(self._history)

    def get_trend(self, window: int = 10) -> StressTrend:
        """Least-squares slope of the last *window* combined scores."""
        if window < 2 or len(self._history) < window:
            return StressTrend.STABLE
        scores = [s.combined for s in list(self._history)[-window:]]
        n = len(scores)
        sum_x = n * (n - 1) / 2
        sum_y = sum(scores)
        sum_xy = sum(i * y for i, y in enumerate(scores))
        sum_x2 = n * (n - 1) * (2 * n - 1) / 6
        slope = (n * sum_xy - sum_x * sum_y) / (n * sum_x2 - sum_x * sum_x)
        if slope > TREND_SLOPE:
            return StressTrend.INCREASING
        if slope < -TREND_SLOPE:
            return StressTrend.DECREASING
        return StressTrend.STABLE

    def get_average(self, window_seconds: float = 300.0, now: float | None = None) -> float:
        now = self._clock() if now is None else now
        recent = [s.combined for s in self._history if now - s.timestamp < window_seconds]
        return sum(recent) / len(recent) if recent else 0.0

    def apply_decay(self, now: float | None = None) -> int:
        """Forget old history after inactivity; returns the entries removed.

        Once idle past the inactivity threshold, only scores from the last
        ``min(30 s, 5 s per inactivity interval beyond the threshold)`` are
        kept.
        """
        now = self._clock() if now is None else now
        idle = now - self._last_scored_at
        if idle < self._inactivity or not self._history:
            return 0

        overdue = idle - self._inactivity
        keep_window = min(
            _MAX_DECAY_WINDOW,
            overdue / self._inactivity * _DECAY_WINDOW_PER_INTERVAL,
        )
        cutoff = now - keep_window
        before = len(self._history)
        kept = [s for s in self._history if s.timestamp >= cutoff]
        self._history.clear()
        self._history.extend(kept)

        removed = before - len(kept)
        if removed:
            logger.info("scorer.decay_applied", removed=removed, idle_seconds=round(idle, 1))
        return removed

    # ── Configuration ─────────────────────────────────────────

    def set_sensitivity(self, sensitivity: Sensitivity | str) -> None:
        """Switch thresholds and restart smoothing and hysteresis."""
        self._sensitivity = normalise_sensitivity(sensitivity)
        self._threshold = SENSITIVITY_THRESHOLDS[self._sensitivity]
        self._reset_smoothing()
        logger.info("scorer.sensitivity_changed", sensitivity=self._sensitivity, threshold=self._threshold)

    def set_threshold(self, threshold: float) -> bool:
        """Override the high threshold; values outside 0–10 are ignored."""
        if not (math.isfinite(threshold) and 0 <= threshold <= 10):
            logger.error("scorer.invalid_threshold", threshold=threshold)
            return False
        self._threshold = float(threshold)
        return True

    def reset(self) -> None:
        """Clear history, smoothing and hysteresis state."""
        self._history.clear()
        self._last_scored_at = self._clock()
        self._reset_smoothing()

    def _reset_smoothing(self) -> None:
        self._smoothed = 0.0
        self._level = StressLevel.NORMAL
        self._elevated_streak = 0
        self._normal_streak = 0
