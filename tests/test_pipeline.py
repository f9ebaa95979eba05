"""Tests for the stress monitor orchestration."""

from __future__ import annotations

import asyncio

import pytest

from behavioral_stress.behavior.pipeline import StressMonitor
from behavioral_stress.models import KeyDown, PointerClick, StressLevel
from conftest import START


def _monitor(store, settings, clock, **kwargs) -> StressMonitor:
    return StressMonitor(store=store, settings=settings, clock=clock, **kwargs)


async def _wait_for(predicate, timeout: float = 1.0) -> bool:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


class TestDetection:
    @pytest.mark.asyncio
    async def test_tick_without_baseline_is_neutral(self, memory_store, settings, clock):
        monitor = _monitor(memory_store, settings, clock)
        score = await monitor.tick()

        assert score.level == StressLevel.NORMAL
        assert score.combined == 0.0
        assert monitor.get_history() == []
        assert await memory_store.get("bstress_latest_score") is None

    @pytest.mark.asyncio
    async def test_tick_caches_latest_score(self, memory_store, settings, clock, preset):
        monitor = _monitor(memory_store, settings, clock)
        await monitor.estimator.apply_preset(preset)

        score = await monitor.tick()
        cached = await memory_store.get("bstress_latest_score")
        assert cached["level"] == score.level.value
        assert "metrics" not in cached
        assert monitor.latest_score == score
        assert len(monitor.get_history()) == 1

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_stop_scoring(self, failing_store, settings, clock, preset):
        monitor = _monitor(failing_store, settings, clock)
        await monitor.estimator.apply_preset(preset)

        score = await monitor.tick()
        assert score is not None
        assert not monitor.estimator.baseline_confirmed

    @pytest.mark.asyncio
    async def test_events_reach_extractor(self, memory_store, settings, clock):
        monitor = _monitor(memory_store, settings, clock)
        monitor.on_event(KeyDown(key="A", timestamp=START))
        monitor.on_event(KeyDown(key="a", timestamp=START + 0.3))
        monitor.on_event(PointerClick(x=10, y=10, timestamp=START))

        stats = monitor.get_key_statistics()
        assert stats[0].key == "a" and stats[0].count == 2
        zones = monitor.get_mouse_zone_statistics()
        assert len(zones) == 9


class TestSubscribers:
    @pytest.mark.asyncio
    async def test_failing_subscriber_is_isolated(self, memory_store, settings, clock):
        monitor = _monitor(memory_store, settings, clock)
        received = []

        def broken(score):
            raise RuntimeError("boom")

        async def collector(score):
            received.append(score)

        monitor.subscribe(broken)
        monitor.subscribe(collector)
        await monitor.tick()
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self, memory_store, settings, clock):
        monitor = _monitor(memory_store, settings, clock)
        received = []
        unsubscribe = monitor.subscribe(received.append)

        await monitor.tick()
        unsubscribe()
        unsubscribe()
        await monitor.tick()
        assert len(received) == 1


class TestLoops:
    @pytest.mark.asyncio
    async def test_start_and_stop_are_idempotent(self, memory_store, settings, clock, preset):
        monitor = _monitor(memory_store, settings, clock)
        await monitor.estimator.apply_preset(preset)
        received = []
        monitor.subscribe(received.append)

        await monitor.start()
        await monitor.start()
        assert monitor.is_detecting
        assert await _wait_for(lambda: len(received) >= 3)

        await monitor.stop()
        await monitor.stop()
        assert not monitor.is_detecting
        count = len(received)
        await asyncio.sleep(0.05)
        assert len(received) == count

    @pytest.mark.asyncio
    async def test_start_refused_while_calibrating(self, memory_store, settings, clock):
        monitor = _monitor(memory_store, settings, clock)
        await monitor.estimator.start_calibration()
        await monitor.start()
        assert not monitor.is_detecting

    @pytest.mark.asyncio
    async def test_start_calibration_stops_detection(self, memory_store, settings, clock, preset):
        monitor = _monitor(memory_store, settings, clock)
        await monitor.estimator.apply_preset(preset)
        await monitor.start()

        state = await monitor.start_calibration()
        assert state.is_calibrating
        assert not monitor.is_detecting
        assert monitor.is_calibrating
        assert await monitor.tick() is None

        await monitor.abort_calibration()
        assert not monitor.is_calibrating
        assert monitor.is_detecting
        await monitor.close()

    @pytest.mark.asyncio
    async def test_full_calibration_starts_detection(self, memory_store, settings, clock):
        monitor = _monitor(memory_store, settings, clock)
        progress = []

        def on_progress(value):
            progress.append(value)
            clock.advance(4)

        monitor.subscribe_progress(on_progress)
        await monitor.start_calibration()

        assert await _wait_for(lambda: monitor.is_detecting)
        assert monitor.estimator.has_baseline
        assert progress[0] == 0.0
        assert progress[-1] == 100.0
        assert progress == sorted(progress)
        await monitor.close()
        assert not monitor.is_detecting


class TestCalibrationTicks:
    @pytest.mark.asyncio
    async def test_manual_calibration(self, memory_store, settings, clock):
        monitor = _monitor(memory_store, settings, clock, autostart_detection=False)
        progress = []
        monitor.subscribe_progress(progress.append)
        await monitor.estimator.start_calibration()
        assert await monitor.tick() is None

        results = []
        for offset in (3, 6, 9, 12):
            clock.now = START + offset
            results.append(await monitor.calibration_tick())

        assert results == [30, 60, 90, 100]
        assert progress == [30.0, 60.0, 90.0, 100.0]
        assert monitor.estimator.has_baseline
        assert not monitor.is_detecting

        score = await monitor.tick()
        assert score.level == StressLevel.NORMAL
        assert await monitor.calibration_tick() == 100

    @pytest.mark.asyncio
    async def test_tick_follows_session_started_elsewhere(self, memory_store, settings, clock, preset):
        other = _monitor(memory_store, settings, clock, autostart_detection=False)
        monitor = _monitor(memory_store, settings, clock, autostart_detection=False)
        await monitor.estimator.apply_preset(preset)

        await other.estimator.start_calibration()
        assert await monitor.tick() is None
        assert monitor.is_calibrating
        assert not monitor.estimator.is_owner
        await monitor.close()

    @pytest.mark.asyncio
    async def test_abandoned_session_does_not_stop_detection(self, memory_store, settings, clock, preset):
        monitor = _monitor(memory_store, settings, clock, autostart_detection=False)
        await monitor.estimator.apply_preset(preset)
        await memory_store.set(
            "bstress_calibration_state",
            {"is_calibrating": True, "start_time": START - 86_400, "session_id": "cal-dead"},
        )

        scores = [await monitor.tick() for _ in range(3)]
        assert all(score is not None for score in scores)
        assert not monitor.is_calibrating
        assert await memory_store.get("bstress_calibration_state") is None
        await monitor.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_resume_running_session(self, memory_store, settings, clock):
        first = _monitor(memory_store, settings, clock, autostart_detection=False)
        await first.estimator.start_calibration()

        second = _monitor(memory_store, settings, clock, autostart_detection=False)
        state = await second.resume()
        assert state.is_calibrating
        assert second.estimator.is_owner
        await second.close()

    @pytest.mark.asyncio
    async def test_resume_with_baseline_starts_detection(self, memory_store, settings, clock, preset):
        first = _monitor(memory_store, settings, clock)
        await first.estimator.apply_preset(preset)

        second = _monitor(memory_store, settings, clock)
        await second.resume()
        assert second.is_detecting
        await second.close()

    @pytest.mark.asyncio
    async def test_resume_without_baseline_waits(self, memory_store, settings, clock):
        monitor = _monitor(memory_store, settings, clock)
        state = await monitor.resume()
        assert not state.is_calibrating
        assert not monitor.is_detecting

    @pytest.mark.asyncio
    async def test_status(self, memory_store, settings, clock, preset):
        monitor = _monitor(memory_store, settings, clock)
        status = monitor.status()
        assert status["phase"] == "idle"
        assert status["level"] is None

        await monitor.estimator.apply_preset(preset)
        monitor.set_sensitivity("high")
        await monitor.tick()
        status = monitor.status()
        assert status["phase"] == "complete"
        assert status["sensitivity"] == "high"
        assert status["level"] == "normal"
        assert status["ticks"] == 1
        assert status["baseline_confirmed"] is True
