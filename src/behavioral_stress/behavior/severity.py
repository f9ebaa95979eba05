"""Severity policy — maps a stress percentage and level to a coarse severity."""

from __future__ import annotations

from typing import Callable

from behavioral_stress.models import StressLevel, StressSeverity

# Percentage cut-offs, checked from the top down.
SEVERITY_THRESHOLDS: dict[StressSeverity, float] = {
    StressSeverity.SEVERE: 75.0,
    StressSeverity.MODERATE: 55.0,
    StressSeverity.MILD: 35.0,
}

SeverityPolicy = Callable[[float | None, StressLevel], StressSeverity]


def derive_stress_severity(percentage: float | None, level: StressLevel) -> StressSeverity:
    """Default severity policy.

    The percentage decides when it clears a cut-off; below all cut-offs the
    hysteresis level is the fallback (``high`` → severe, ``moderate`` →
    moderate).
    """
    value = max(0.0, percentage) if percentage is not None else 0.0
    for severity, threshold in SEVERITY_THRESHOLDS.items():
        if value >= threshold:
            return severity

    if level == StressLevel.HIGH:
        return StressSeverity.SEVERE
    if level == StressLevel.MODERATE:
        return StressSeverity.MODERATE
    return StressSeverity.NONE
