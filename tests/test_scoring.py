"""Tests for stress scoring, hysteresis and severity."""

from __future__ import annotations

import math

import pytest

from behavioral_stress.behavior.models import MetricKey
from behavioral_stress.behavior.scoring import (
    KEYBOARD_WEIGHT_SUM,
    KEYBOARD_WEIGHTS,
    MOUSE_WEIGHT_SUM,
    MOUSE_WEIGHTS,
    StressScorer,
    directional_z,
    keyboard_channel,
    mouse_channel,
    stress_percentage,
)
from behavioral_stress.behavior.severity import derive_stress_severity
from behavioral_stress.models import MetricDirection, StressLevel, StressSeverity, StressTrend
from conftest import HIGH_STRESS_PROFILE, FakeClock, build_metrics


@pytest.fixture
def scorer(clock: FakeClock) -> StressScorer:
    return StressScorer("medium", clock=clock)


def _run(scorer: StressScorer, clock: FakeClock, metrics, baseline, ticks: int):
    scores = []
    for _ in range(ticks):
        clock.advance(1)
        scores.append(scorer.calculate(metrics, baseline))
    return scores


# ── Directional z ─────────────────────────────────────────────


class TestDirectionalZ:
    def test_at_baseline_is_zero(self):
        assert directional_z(320, 320, 20) == 0.0

    def test_wrong_direction_is_zero(self):
        assert directional_z(300, 320, 20, MetricDirection.HIGHER) == 0.0
        assert directional_z(340, 320, 20, MetricDirection.LOWER) == 0.0

    def test_lower_direction(self):
        assert directional_z(280, 320, 20, MetricDirection.LOWER) == pytest.approx(2.0)

    def test_minimum_threshold_subtracted(self):
        assert directional_z(380, 320, 20, minimum_threshold=0.1) == pytest.approx(2.9)
        assert directional_z(322, 320, 20, minimum_threshold=0.2) == 0.0

    def test_capped_at_four(self):
        assert directional_z(10_000, 320, 20) == 4.0
        assert directional_z(10_000, 320, 20, minimum_threshold=0.2) == pytest.approx(3.8)

    def test_zero_spread_uses_floor(self):
        # floor = max(|0| × 0.25, 0.1) = 0.1
        assert directional_z(0.2, 0.0, 0.0) == pytest.approx(2.0)
        # floor = 100 × 0.25 = 25
        assert directional_z(150, 100, 0.0) == pytest.approx(2.0)

    def test_non_finite_input(self):
        assert directional_z(math.nan, 1.0, 1.0) == 0.0
        assert directional_z(math.inf, 1.0, 1.0) == 0.0
        assert directional_z(1.0, math.nan, 1.0) == 0.0

    @pytest.mark.parametrize("value", [-1e6, -3.0, 0.0, 0.5, 2.0, 17.0, 1e9])
    @pytest.mark.parametrize("spread", [0.0, 0.01, 1.0, 50.0])
    def test_bounds(self, value, spread):
        z = directional_z(value, 1.0, spread)
        assert 0.0 <= z <= 4.0


# ── Weight table & channels ───────────────────────────────────


class TestChannels:
    def test_weight_sums(self):
        assert MOUSE_WEIGHT_SUM == pytest.approx(0.7)
        assert KEYBOARD_WEIGHT_SUM == pytest.approx(1.0)
        assert {w.key.group for w in MOUSE_WEIGHTS} == {"mouse"}
        assert {w.key.group for w in KEYBOARD_WEIGHTS} == {"keyboard"}

    def test_calm_channels_are_zero(self, preset):
        metrics = build_metrics()
        assert mouse_channel(metrics, preset) == 0.0
        assert keyboard_channel(metrics, preset) == 0.0

    def test_click_only_elevation(self, preset):
        metrics = build_metrics({MetricKey.CLICK_FREQUENCY: 3.5})
        # (3.5 - 0.2) × 0.15 over the full mouse weight sum
        assert mouse_channel(metrics, preset) == pytest.approx(0.495 / 0.7)

    def test_penalties(self, preset):
        metrics = build_metrics({MetricKey.PATH_EFFICIENCY: -1.5, MetricKey.PAUSE_RATIO: 1.2})
        # path: min(1, 0.075 × 2) × 0.1 ; pause: min(0.5, 0.06 × 2)
        assert mouse_channel(metrics, preset) == pytest.approx(0.015 + 0.12)

    def test_pause_penalty_capped(self, preset):
        metrics = build_metrics({MetricKey.PAUSE_RATIO: 10.0})
        assert mouse_channel(metrics, preset) == pytest.approx(0.5)

    def test_high_profile_channels(self, preset):
        metrics = build_metrics(HIGH_STRESS_PROFILE)
        assert mouse_channel(metrics, preset) == pytest.approx(2.34 / 0.7 + 0.135)
        assert keyboard_channel(metrics, preset) == pytest.approx(2.03)


# ── Scorer scenarios ──────────────────────────────────────────


class TestScenarios:
    def test_calm_user_scores_normal(self, scorer, clock, baseline):
        scores = _run(scorer, clock, build_metrics(), baseline, 5)
        last = scores[-1]
        assert last.combined == pytest.approx(0.0)
        assert last.level == StressLevel.NORMAL
        assert last.percentage <= 50
        assert last.severity == StressSeverity.NONE
        assert last.should_intervene is False

    def test_sustained_stress_reaches_high(self, scorer, clock, baseline):
        metrics = build_metrics(HIGH_STRESS_PROFILE)
        scores = _run(scorer, clock, metrics, baseline, 8)

        assert [s.level for s in scores] == [
            StressLevel.NORMAL,
            StressLevel.NORMAL,
            StressLevel.NORMAL,
            StressLevel.MODERATE,
            StressLevel.MODERATE,
            StressLevel.MODERATE,
            StressLevel.MODERATE,
            StressLevel.HIGH,
        ]
        last = scores[-1]
        assert last.should_intervene is True
        assert last.severity == StressSeverity.SEVERE
        assert 80 <= last.percentage <= 100
        assert not any(s.should_intervene for s in scores[:-1])

    def test_smoothing_converges_to_raw(self, scorer, clock, baseline):
        metrics = build_metrics(HIGH_STRESS_PROFILE)
        scores = _run(scorer, clock, metrics, baseline, 40)
        raw = 0.7 * scores[-1].mouse + 0.3 * scores[-1].keyboard
        assert scores[-1].combined == pytest.approx(raw, rel=1e-4)

    def test_no_baseline_is_neutral(self, scorer):
        score = scorer.calculate(build_metrics(HIGH_STRESS_PROFILE), None)
        assert score.combined == 0.0
        assert score.level == StressLevel.NORMAL
        assert score.percentage == 0.0
        assert scorer.get_history() == []

    def test_low_sensitivity_needs_more(self, clock, baseline):
        scorer = StressScorer("low", clock=clock)
        scores = _run(scorer, clock, build_metrics(HIGH_STRESS_PROFILE), baseline, 30)
        assert scores[-1].level == StressLevel.MODERATE


class TestHysteresis:
    def test_three_agreeing_ticks_required(self, scorer):
        assert scorer._apply_hysteresis(StressLevel.HIGH) == StressLevel.NORMAL
        assert scorer._apply_hysteresis(StressLevel.HIGH) == StressLevel.NORMAL
        assert scorer._apply_hysteresis(StressLevel.HIGH) == StressLevel.HIGH

        assert scorer._apply_hysteresis(StressLevel.NORMAL) == StressLevel.HIGH
        assert scorer._apply_hysteresis(StressLevel.NORMAL) == StressLevel.HIGH
        assert scorer._apply_hysteresis(StressLevel.NORMAL) == StressLevel.NORMAL

    def test_interrupted_streak_does_not_switch(self, scorer):
        for raw in (StressLevel.HIGH, StressLevel.HIGH, StressLevel.NORMAL, StressLevel.HIGH, StressLevel.HIGH):
            level = scorer._apply_hysteresis(raw)
        assert level == StressLevel.NORMAL

    def test_moderate_and_high_share_a_streak(self, scorer):
        scorer._apply_hysteresis(StressLevel.MODERATE)
        scorer._apply_hysteresis(StressLevel.HIGH)
        assert scorer._apply_hysteresis(StressLevel.MODERATE) == StressLevel.MODERATE


# ── Percentage & severity ─────────────────────────────────────


class TestPercentage:
    def test_regime_boundaries(self):
        assert stress_percentage(0.0, 2.8) == 0.0
        assert stress_percentage(1.4, 2.8) == pytest.approx(50.0)
        assert stress_percentage(2.1, 2.8) == pytest.approx(65.0)
        assert stress_percentage(2.8, 2.8) == pytest.approx(80.0)
        assert stress_percentage(4.2, 2.8) == pytest.approx(100.0)
        assert stress_percentage(50.0, 2.8) == 100.0

    def test_negative_and_non_finite(self):
        assert stress_percentage(-3.0, 2.8) == 0.0
        assert stress_percentage(math.nan, 2.8) == 0.0

    @pytest.mark.parametrize("threshold", [2.2, 2.8, 3.5])
    def test_monotone_and_bounded(self, threshold):
        values = [stress_percentage(i * 0.05, threshold) for i in range(200)]
        assert all(0.0 <= v <= 100.0 for v in values)
        assert all(a <= b for a, b in zip(values, values[1:]))


class TestSeverity:
    @pytest.mark.parametrize(
        "percentage, level, expected",
        [
            (80.0, StressLevel.NORMAL, StressSeverity.SEVERE),
            (75.0, StressLevel.NORMAL, StressSeverity.SEVERE),
            (60.0, StressLevel.NORMAL, StressSeverity.MODERATE),
            (40.0, StressLevel.NORMAL, StressSeverity.MILD),
            (10.0, StressLevel.HIGH, StressSeverity.SEVERE),
            (10.0, StressLevel.MODERATE, StressSeverity.MODERATE),
            (10.0, StressLevel.NORMAL, StressSeverity.NONE),
            (None, StressLevel.NORMAL, StressSeverity.NONE),
        ],
    )
    def test_default_policy(self, percentage, level, expected):
        assert derive_stress_severity(percentage, level) == expected

    def test_custom_policy(self, clock, baseline):
        scorer = StressScorer(clock=clock, severity_policy=lambda pct, level: StressSeverity.MILD)
        score = scorer.calculate(build_metrics(), baseline)
        assert score.severity == StressSeverity.MILD


# ── History, trend, decay ─────────────────────────────────────


class TestHistory:
    def test_history_is_bounded(self, clock, baseline):
        scorer = StressScorer(history_size=5, clock=clock)
        _run(scorer, clock, build_metrics(), baseline, 12)
        history = scorer.get_history()
        assert len(history) == 5
        assert history[-1].timestamp == clock.now

    def test_trend(self, scorer, clock, baseline):
        assert scorer.get_trend() == StressTrend.STABLE
        _run(scorer, clock, build_metrics(HIGH_STRESS_PROFILE), baseline, 10)
        assert scorer.get_trend() == StressTrend.INCREASING
        _run(scorer, clock, build_metrics(), baseline, 10)
        assert scorer.get_trend() == StressTrend.DECREASING

    def test_average(self, scorer, clock, baseline):
        scores = _run(scorer, clock, build_metrics(HIGH_STRESS_PROFILE), baseline, 3)
        expected = sum(s.combined for s in scores) / 3
        assert scorer.get_average() == pytest.approx(expected)
        assert scorer.get_average(now=clock.now + 600) == 0.0

    def test_decay_after_inactivity(self, scorer, clock, baseline):
        _run(scorer, clock, build_metrics(), baseline, 6)
        before = len(scorer.get_history())

        clock.advance(20)
        assert scorer.apply_decay() == 0

        clock.advance(15)  # 35 s idle
        removed = scorer.apply_decay()
        assert removed > 0
        assert len(scorer.get_history()) < before

    def test_reset_is_idempotent(self, scorer, clock, baseline):
        _run(scorer, clock, build_metrics(HIGH_STRESS_PROFILE), baseline, 5)
        scorer.reset()
        scorer.reset()
        assert scorer.get_history() == []
        assert scorer.smoothed == 0.0
        assert scorer.level == StressLevel.NORMAL


class TestConfiguration:
    def test_sensitivity_thresholds(self, clock):
        assert StressScorer("low", clock=clock).threshold == 3.5
        assert StressScorer("medium", clock=clock).threshold == 2.8
        assert StressScorer("high", clock=clock).threshold == 2.2
        assert StressScorer("extreme", clock=clock).threshold == 2.8

    def test_moderate_threshold_floor(self, scorer):
        assert scorer.moderate_threshold == pytest.approx(1.4)
        scorer.set_threshold(1.0)
        assert scorer.moderate_threshold == pytest.approx(0.8)

    def test_sensitivity_change_resets_smoothing(self, scorer, clock, baseline):
        _run(scorer, clock, build_metrics(HIGH_STRESS_PROFILE), baseline, 8)
        assert scorer.level == StressLevel.HIGH
        scorer.set_sensitivity("high")
        assert scorer.threshold == 2.2
        assert scorer.smoothed == 0.0
        assert scorer.level == StressLevel.NORMAL

    def test_invalid_threshold_ignored(self, scorer):
        assert scorer.set_threshold(12.0) is False
        assert scorer.set_threshold(-1.0) is False
        assert scorer.threshold == 2.8
        assert scorer.set_threshold(3.0) is True
        assert scorer.threshold == 3.0
