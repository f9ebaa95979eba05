"""Behavioral stress detection from pointer, keyboard and scroll activity.

This package learns a personal behavioral baseline and scores how far live
behavior deviates from it.

Architecture
------------
1. **Feature extraction** (`features.py`)
   - Pointer kinematics, click patterns, typing rhythm, scroll dynamics
   - Rolling-window aggregation into metric snapshots

2. **Baseline estimation** (`baseline.py`)
   - Fixed-length calibration sessions, resumable across restarts
   - Robust per-metric median + floored MAD
   - Single owner per session when several instances share a store

3. **Stress scoring** (`scoring.py`, `severity.py`)
   - Directional z-scores, weighted mouse / keyboard channels
   - EMA smoothing, three-tick hysteresis, percentage and severity

4. **Orchestration** (`pipeline.py`)
   - Calibration and detection loops, subscriber fan-out

Limitations
-----------
Scores describe deviation from *this user's* calibration period.  They are
behavioral indicators, never a diagnosis.
"""

from behavioral_stress.behavior.baseline import BaselineEstimator, CalibrationError
from behavioral_stress.behavior.features import FeatureExtractor
from behavioral_stress.behavior.models import (
    Baseline,
    BaselinePreset,
    BehavioralMetrics,
    CalibrationPhase,
    CalibrationState,
    MetricKey,
    MetricStat,
    StressScore,
)
from behavioral_stress.behavior.pipeline import StressMonitor
from behavioral_stress.behavior.scoring import StressScorer, directional_z
from behavioral_stress.behavior.severity import derive_stress_severity

__all__ = [
    "Baseline",
    "BaselineEstimator",
    "BaselinePreset",
    "BehavioralMetrics",
    "CalibrationError",
    "CalibrationPhase",
    "CalibrationState",
    "FeatureExtractor",
    "MetricKey",
    "MetricStat",
    "StressMonitor",
    "StressScore",
    "StressScorer",
    "derive_stress_severity",
    "directional_z",
]
