"""Stress monitor — orchestrates extraction, calibration and detection.

Architecture
~~~~~~~~~~~~
The monitor owns three collaborators and two mutually exclusive modes:

* **Calibration** — every ``calibration_tick_seconds`` the current metric
  snapshot is fed into the :class:`BaselineEstimator` and progress is
  published.  When the session completes the baseline is verified, the
  extractor and scorer are reset and detection starts.
* **Detection** — every ``detection_interval_seconds`` a snapshot is scored
  by the :class:`StressScorer` and published to subscribers.  A decay task
  trims score history while the user is idle.

Input events are pushed synchronously through :meth:`StressMonitor.on_event`.
Subscriber and storage failures are logged and never stop the loops.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from typing import Any, Awaitable, Callable, Union

import structlog

from behavioral_stress.behavior.baseline import BaselineEstimator
from behavioral_stress.behavior.features import FeatureExtractor
from behavioral_stress.behavior.models import (
    CalibrationState,
    KeyStatistic,
    StressScore,
    ZoneStatistic,
)
from behavioral_stress.behavior.scoring import StressScorer
from behavioral_stress.config import Settings, get_settings
from behavioral_stress.models import InputEvent
from behavioral_stress.storage.base import KeyValueStore, StorageUnavailableError

logger = structlog.get_logger(__name__)

ScoreCallback = Callable[[StressScore], Union[Awaitable[None], None]]
ProgressCallback = Callable[[float], Union[Awaitable[None], None]]

_LATEST_SCORE_KEY = "latest_score"


class StressMonitor:
    """Background service turning raw input into published stress scores.

    Integration::

        monitor = StressMonitor(store=SQLKeyValueStore())
        monitor.subscribe(print)
        await monitor.resume()
        ...
        monitor.on_event(event)     # from the host's input hooks
        ...
        await monitor.close()
    """

    def __init__(
        self,
        extractor: FeatureExtractor | None = None,
        estimator: BaselineEstimator | None = None,
        scorer: StressScorer | None = None,
        *,
        store: KeyValueStore | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
        autostart_detection: bool = True,
    ) -> None:
        settings = settings or get_settings()
        self._settings = settings
        self._store = store
        self._autostart = autostart_detection
        self._extractor = extractor or FeatureExtractor(
            window_seconds=settings.metric_window_seconds,
            viewport=(settings.viewport_width, settings.viewport_height),
            clock=clock,
        )
        self._estimator = estimator or BaselineEstimator(
            store,
            duration_seconds=settings.calibration_duration_seconds,
            min_samples=settings.calibration_min_samples,
            key_prefix=settings.storage_key_prefix,
            clock=clock,
        )
        self._scorer = scorer or StressScorer(
            settings.sensitivity,
            history_size=settings.score_history_size,
            inactivity_seconds=settings.inactivity_decay_seconds,
            clock=clock,
        )

        self._detection_interval = settings.detection_interval_seconds
        self._calibration_interval = settings.calibration_tick_seconds
        self._decay_interval = settings.decay_check_interval_seconds

        self._detection_task: asyncio.Task | None = None
        self._decay_task: asyncio.Task | None = None
        self._calibration_task: asyncio.Task | None = None
        self._transition_lock = asyncio.Lock()

        self._subscribers: list[ScoreCallback] = []
        self._progress_subscribers: list[ProgressCallback] = []
        self._latest: StressScore | None = None
        self._ticks = 0

    # ── Collaborators ─────────────────────────────────────────

    @property
    def extractor(self) -> FeatureExtractor:
        return self._extractor

    @property
    def estimator(self) -> BaselineEstimator:
        return self._estimator

    @property
    def scorer(self) -> StressScorer:
        return self._scorer

    @property
    def latest_score(self) -> StressScore | None:
        return self._latest

    @property
    def is_detecting(self) -> bool:
        return self._detection_task is not None and not self._detection_task.done()

    @property
    def is_calibrating(self) -> bool:
        return self._estimator.is_calibrating

    # ── Ingestion ─────────────────────────────────────────────

    def on_event(self, event: InputEvent) -> None:
        self._extractor.on_event(event)

    # ── Subscriptions ─────────────────────────────────────────

    def subscribe(self, callback: ScoreCallback) -> Callable[[], None]:
        """Register a sync or async callback for every published score.

        Returns a function that removes the subscription.
        """
        self._subscribers.append(callback)
        return lambda: self._discard(self._subscribers, callback)

    def subscribe_progress(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a callback receiving calibration progress (0–100)."""
        self._progress_subscribers.append(callback)
        return lambda: self._discard(self._progress_subscribers, callback)

    @staticmethod
    def _discard(callbacks: list, callback: Callable) -> None:
        if callback in callbacks:
            callbacks.remove(callback)

    async def _notify(self, callbacks: list[Callable], payload: Any) -> None:
        for callback in list(callbacks):
            try:
                result = callback(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as exc:
                logger.error(
                    "monitor.subscriber_error",
                    subscriber=getattr(callback, "__qualname__", repr(callback)),
                    error=str(exc),
                )

    # ── Detection ─────────────────────────────────────────────

    async def tick(self) -> StressScore | None:
        """Run one detection tick; ``None`` while a calibration is running."""
        if self._estimator.is_calibrating:
            return None

        await self._estimator.refresh()
        if self._estimator.is_calibrating:
            logger.info("monitor.calibration_observed", session_id=self._estimator.state.session_id)
            await self._enter_calibration()
            return None

        metrics = self._extractor.get_metrics()
        score = self._scorer.calculate(metrics, self._estimator.baseline)
        self._latest = score
        self._ticks += 1

        await self._notify(self._subscribers, score)
        if self._estimator.has_baseline:
            await self._cache_score(score)
        return score

    async def _cache_score(self, score: StressScore) -> None:
        if self._store is None:
            return
        try:
            await self._store.set(
                f"{self._settings.storage_key_prefix}{_LATEST_SCORE_KEY}",
                score.model_dump(mode="json", exclude={"metrics"}),
            )
        except StorageUnavailableError as exc:
            logger.warning("monitor.score_cache_failed", error=str(exc))

    async def start(self) -> None:
        """Start the detection and decay loops (no-op if already running)."""
        if self.is_detecting:
            return
        if self._estimator.is_calibrating:
            logger.warning("monitor.start_refused_while_calibrating")
            return
        self._detection_task = asyncio.create_task(self._detection_loop())
        self._decay_task = asyncio.create_task(self._decay_loop())
        logger.info(
            "monitor.detection_started",
            interval_seconds=self._detection_interval,
            has_baseline=self._estimator.has_baseline,
        )

    async def stop(self) -> None:
        """Stop detection and decay; safe to call repeatedly."""
        tasks = [t for t in (self._detection_task, self._decay_task) if t is not None]
        self._detection_task = None
        self._decay_task = None
        if not tasks:
            return
        await self._cancel(tasks)
        logger.info("monitor.detection_stopped")

    async def _detection_loop(self) -> None:
        while True:
            try:
                await self.tick()
            except Exception:
                logger.exception("monitor.tick_error")
            if self._estimator.is_calibrating:
                return
            await asyncio.sleep(self._detection_interval)

    async def _decay_loop(self) -> None:
        while True:
            await asyncio.sleep(self._decay_interval)
            try:
                self._scorer.apply_decay()
            except Exception:
                logger.exception("monitor.decay_error")

    # ── Calibration ───────────────────────────────────────────

    async def start_calibration(self) -> CalibrationState:
        """Stop detection and begin a new calibration session."""
        async with self._transition_lock:
            await self.stop()
            await self._cancel_calibration_task()
            self._extractor.reset()
            state = await self._estimator.start_calibration()
            await self._notify(self._progress_subscribers, 0.0)
            self._calibration_task = asyncio.create_task(self._calibration_loop())
            return state

    async def abort_calibration(self) -> None:
        async with self._transition_lock:
            await self._cancel_calibration_task()
            await self._estimator.abort_calibration()
        if self._estimator.has_baseline:
            await self.start()

    async def calibration_tick(self) -> int:
        """Feed one snapshot to the estimator and publish progress."""
        if not self._estimator.is_calibrating:
            return int(self._estimator.progress)

        completed = await self._estimator.add_sample(self._extractor.get_metrics())
        progress = 100.0 if completed else self._estimator.progress
        await self._notify(self._progress_subscribers, progress)
        if completed:
            await self._on_calibration_complete()
        return int(progress)

    async def _calibration_loop(self) -> None:
        while self._estimator.is_calibrating:
            await asyncio.sleep(self._calibration_interval)
            try:
                await self.calibration_tick()
            except Exception:
                logger.exception("monitor.calibration_tick_error")

    async def _on_calibration_complete(self) -> None:
        baseline = self._estimator.baseline or await self._estimator.load_baseline()
        if baseline is None:
            logger.error("monitor.calibration_complete_without_baseline")
            return
        self._extractor.reset()
        self._scorer.reset()
        logger.info(
            "monitor.calibration_complete",
            confirmed=self._estimator.baseline_confirmed,
            context=baseline.context.time_of_day,
        )
        if self._autostart:
            await self.start()

    async def _enter_calibration(self) -> None:
        """Follow a session started by another instance sharing the store."""
        await self.stop()
        if self._calibration_task is None or self._calibration_task.done():
            self._calibration_task = asyncio.create_task(self._calibration_loop())

    async def _cancel_calibration_task(self) -> None:
        task, self._calibration_task = self._calibration_task, None
        if task is not None:
            await self._cancel([task])

    @staticmethod
    async def _cancel(tasks: list[asyncio.Task]) -> None:
        current = asyncio.current_task()
        for task in tasks:
            if task is current:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    # ── Lifecycle ─────────────────────────────────────────────

    async def resume(self) -> CalibrationState:
        """Restore persisted state and start the matching mode."""
        state = await self._estimator.restore_calibration_state()
        if state.is_calibrating:
            logger.info("monitor.calibration_resumed", progress=state.progress)
            self._calibration_task = asyncio.create_task(self._calibration_loop())
        elif self._estimator.has_baseline:
            await self.start()
        else:
            logger.info("monitor.awaiting_calibration")
        return state

    async def close(self) -> None:
        await self.stop()
        await self._cancel_calibration_task()
        self._subscribers.clear()
        self._progress_subscribers.clear()
        logger.info("monitor.closed", ticks=self._ticks)

    # ── Accessors ─────────────────────────────────────────────

    def set_sensitivity(self, sensitivity: str) -> None:
        self._scorer.set_sensitivity(sensitivity)

    def get_history(self) -> list[StressScore]:
        return self._scorer.get_history()

    def get_key_statistics(self) -> list[KeyStatistic]:
        return self._extractor.get_key_statistics()

    def get_mouse_zone_statistics(self) -> list[ZoneStatistic]:
        return self._extractor.get_mouse_zone_statistics()

    def status(self) -> dict[str, Any]:
        latest = self._latest
        return {
            "phase": self._estimator.phase.value,
            "calibrating": self._estimator.is_calibrating,
            "calibration_owner": self._estimator.is_owner,
            "progress": self._estimator.progress,
            "detecting": self.is_detecting,
            "has_baseline": self._estimator.has_baseline,
            "baseline_confirmed": self._estimator.baseline_confirmed,
            "sensitivity": self._scorer.sensitivity,
            "threshold": self._scorer.threshold,
            "level": latest.level.value if latest else None,
            "percentage": latest.percentage if latest else None,
            "trend": self._scorer.get_trend().value,
            "average": self._scorer.get_average(),
            "ticks": self._ticks,
        }
