"""Baseline estimation — calibration sessions and robust per-metric baselines.

A calibration session collects one :class:`BehavioralMetrics` snapshot per
tick for a fixed duration, then reduces every metric to its median and a
floored median absolute deviation (MAD).

Several estimator instances may share one :class:`KeyValueStore` (e.g. one
per browser tab).  Exactly one of them owns a running session: the one that
started it or most recently resumed it; the owner's id is stored with the
session.  The others observe: they mirror progress from the store and adopt
the baseline once it appears, but never write calibration state.  A session
that has outlived its duration is terminal: any instance finalises it when
enough samples exist, and an abandoned one is discarded.

Storage failures are logged and swallowed; calibration continues on the
in-memory copy.
"""

from __future__ import annotations

import math
import secrets
import statistics
import time
from datetime import datetime
from typing import Any, Callable, Iterable

import structlog
from pydantic import ValidationError

from behavioral_stress.behavior.models import (
    Baseline,
    BaselineContext,
    BaselineHistoryEntry,
    BaselinePreset,
    BehavioralMetrics,
    CalibrationPhase,
    CalibrationState,
    MetricKey,
)
from behavioral_stress.config import BASELINE_DURATION_SECONDS
from behavioral_stress.storage.base import KeyValueStore, StorageUnavailableError

logger = structlog.get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────

_MAD_MEDIAN_FRACTION = 0.25
_MAD_ABSOLUTE_FLOOR = 0.1
_ADAPTIVE_ALPHA = 0.05
_HISTORY_DAYS = 30
# An overdue session with no owner write for this long is abandoned.
_ABANDONED_AFTER_SECONDS = 30.0

# Store keys (prefixed per estimator).
_STATE = "calibration_state"
_PROGRESS = "calibration_progress"
_DATA = "calibration_data"
_SESSION = "calibration_session"
_BASELINE = "baseline"
_HISTORY = "baseline_history"
_CALIBRATION_KEYS = (_STATE, _PROGRESS, _DATA, _SESSION)


class CalibrationError(RuntimeError):
    """Calibration was driven in a way that cannot produce a baseline."""


# ── Robust statistics ─────────────────────────────────────────


def median(values: Iterable[float]) -> float:
    """Median with the even-length average; ``0.0`` for an empty input."""
    values = list(values)
    if not values:
        return 0.0
    return float(statistics.median(values))


def median_absolute_deviation(values: Iterable[float]) -> float:
    """MAD floored at ``max(|median| × 0.25, 0.1)``; ``0.0`` when empty.

    The floor keeps near-constant calibration data from producing a
    hair-trigger baseline.
    """
    values = list(values)
    if not values:
        return 0.0
    centre = median(values)
    mad = median(abs(v - centre) for v in values)
    return max(mad, abs(centre) * _MAD_MEDIAN_FRACTION, _MAD_ABSOLUTE_FLOOR)


def baseline_context(now: float) -> BaselineContext:
    """Time-of-day band, hour and weekday of *now* (local time)."""
    moment = datetime.fromtimestamp(now)
    hour = moment.hour
    if 6 <= hour < 12:
        band = "morning"
    elif 12 <= hour < 18:
        band = "afternoon"
    elif 18 <= hour < 22:
        band = "evening"
    else:
        band = "night"
    return BaselineContext(time_of_day=band, hour=hour, day_of_week=moment.weekday())


def compute_baseline(samples: list[BehavioralMetrics], now: float) -> Baseline:
    """Reduce calibration samples to a median/MAD baseline.

    Non-finite values are ignored per metric.
    """
    groups: dict[str, dict[str, dict[str, float]]] = {"mouse": {}, "keyboard": {}, "scroll": {}}
    for key in MetricKey:
        values = [v for v in (s.value(key) for s in samples) if math.isfinite(v)]
        groups[key.group][key.field] = {
            "median": median(values),
            "mad": median_absolute_deviation(values),
        }
    return Baseline.model_validate(
        {**groups, "timestamp": now, "context": baseline_context(now).model_dump()}
    )


def zero_spread_metrics(baseline: BaselinePreset) -> list[str]:
    return [key.value for key in MetricKey if baseline.stat(key).mad <= 0]


# ── Estimator ─────────────────────────────────────────────────


class BaselineEstimator:
    """Drives calibration sessions and owns the current :class:`Baseline`.

    Integration::

        estimator = BaselineEstimator(store)
        await estimator.restore_calibration_state()
        await estimator.start_calibration()
        while not await estimator.add_sample(extractor.get_metrics()):
            await asyncio.sleep(1)
    """

    def __init__(
        self,
        store: KeyValueStore | None = None,
        *,
        duration_seconds: float = BASELINE_DURATION_SECONDS,
        min_samples: int = 5,
        key_prefix: str = "bstress_",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if duration_seconds <= 0:
            raise ValueError("duration_seconds must be positive")
        self._store = store
        self._duration = float(duration_seconds)
        self._min_samples = max(1, int(min_samples))
        self._prefix = key_prefix
        self._clock = clock

        self._baseline: Baseline | None = None
        self._baseline_confirmed = False
        self._state = CalibrationState()
        self._owner = False
        self._session_persisted = False
        self._instance_id = secrets.token_hex(4)

    # ── Properties ────────────────────────────────────────────

    @property
    def baseline(self) -> Baseline | None:
        return self._baseline

    @property
    def has_baseline(self) -> bool:
        return self._baseline is not None

    @property
    def baseline_confirmed(self) -> bool:
        """``True`` once the current baseline is known to be persisted."""
        return self._baseline is not None and self._baseline_confirmed

    @property
    def state(self) -> CalibrationState:
        return self._state.model_copy(deep=True)

    @property
    def phase(self) -> CalibrationPhase:
        if self._state.is_calibrating:
            return CalibrationPhase.CALIBRATING
        if self._baseline is not None:
            return CalibrationPhase.COMPLETE
        return CalibrationPhase.IDLE

    @property
    def is_calibrating(self) -> bool:
        return self._state.is_calibrating

    @property
    def is_owner(self) -> bool:
        return self._state.is_calibrating and self._owner

    @property
    def progress(self) -> float:
        if self._state.is_calibrating:
            return self._progress_at(self._state.start_time)
        return 100.0 if self._baseline is not None else 0.0

    @property
    def duration_seconds(self) -> float:
        return self._duration

    # ── Calibration ───────────────────────────────────────────

    async def start_calibration(self) -> CalibrationState:
        """Begin a new session owned by this instance."""
        now = self._clock()
        session_id = f"cal-{int(now * 1000)}-{secrets.token_hex(4)}"
        self._state = CalibrationState(
            is_calibrating=True,
            start_time=now,
            progress=0.0,
            session_id=session_id,
        )
        self._owner = True
        self._session_persisted = await self._persist_session()
        await self._write(_DATA, [])
        logger.info(
            "baseline.calibration_started",
            session_id=session_id,
            duration_seconds=self._duration,
            persisted=self._session_persisted,
        )
        return self.state

    async def add_sample(self, metrics: BehavioralMetrics) -> bool:
        """Feed one snapshot into the running session.

        Returns ``True`` when the session has completed, either by this call
        or (for observers) because the owner finished it.
        """
        was_calibrating = self._state.is_calibrating
        await self._sync_session()

        if not self._state.is_calibrating:
            return was_calibrating and self._baseline is not None

        now = self._clock()
        elapsed = max(0.0, now - (self._state.start_time or now))
        self._state.progress = self._progress_at(self._state.start_time, now)

        if not self._owner:
            return False

        samples = self._state.collected_samples
        if elapsed < self._duration or len(samples) < self._min_samples:
            if elapsed >= self._duration:
                logger.info(
                    "baseline.calibration_extended",
                    samples=len(samples),
                    min_samples=self._min_samples,
                )
            samples.append(metrics.model_copy(update={"timestamp": now}))
            await self._write(_DATA, [s.model_dump(mode="json") for s in samples])
            await self._write(_PROGRESS, self._state.progress)
            await self._write(_STATE, self._state_record())
            return False

        await self.complete_calibration()
        return True

    async def complete_calibration(self) -> Baseline:
        """Finalise the session: compute, persist and adopt the baseline."""
        if self._state.is_calibrating and not self._owner:
            raise CalibrationError("only the owning session may finalise calibration")
        samples = self._state.collected_samples
        if not samples:
            raise CalibrationError("no calibration samples were collected")

        now = self._clock()
        session_id = self._state.session_id
        baseline = compute_baseline(samples, now)
        await self._save_baseline(baseline, add_to_history=True)

        self._state = CalibrationState(progress=100.0)
        self._owner = False
        self._session_persisted = False
        await self._clear_calibration_keys()

        logger.info(
            "baseline.calibration_completed",
            session_id=session_id,
            samples=len(samples),
            confirmed=self._baseline_confirmed,
        )
        return self._baseline  # type: ignore[return-value]

    async def abort_calibration(self) -> None:
        if not self._state.is_calibrating:
            return
        session_id = self._state.session_id
        if self._owner:
            await self._clear_calibration_keys()
        self._state = CalibrationState()
        self._owner = False
        self._session_persisted = False
        logger.info("baseline.calibration_aborted", session_id=session_id)

    async def restore_calibration_state(self) -> CalibrationState:
        """Rebuild state from the store after a restart.

        The elapsed time of a persisted session is preserved.  The restoring
        instance claims ownership; an earlier owner drops to observer on its
        next sync.  A session that has run past its duration with enough
        samples is finalised.
        """
        await self.load_baseline()
        found, raw = await self._read(_STATE)
        if not found or not isinstance(raw, dict) or not raw.get("is_calibrating"):
            return self.state

        _, data = await self._read(_DATA)
        now = self._clock()
        start_time = raw.get("start_time")
        self._state = CalibrationState(
            is_calibrating=True,
            start_time=start_time,
            progress=self._progress_at(start_time, now),
            session_id=raw.get("session_id"),
            collected_samples=self._parse_samples(data),
        )
        self._owner = True
        self._session_persisted = await self._write(_STATE, self._state_record())
        logger.info(
            "baseline.calibration_restored",
            session_id=self._state.session_id,
            progress=self._state.progress,
            samples=len(self._state.collected_samples),
        )

        elapsed = now - (start_time if start_time is not None else now)
        if elapsed >= self._duration and len(self._state.collected_samples) >= self._min_samples:
            await self.complete_calibration()
        return self.state

    # ── Baseline lifecycle ────────────────────────────────────

    async def load_baseline(self) -> Baseline | None:
        """Read the persisted baseline (the store wins over memory)."""
        if self._store is None:
            return self._baseline
        found, raw = await self._read(_BASELINE)
        if not found:
            return self._baseline
        if raw is None:
            if self._baseline is not None and self._baseline_confirmed:
                logger.info("baseline.removed_externally")
                self._baseline = None
            return self._baseline

        try:
            baseline = Baseline.model_validate(raw)
        except ValidationError as exc:
            logger.error("baseline.corrupt", error=str(exc))
            return self._baseline

        if not baseline.history:
            _, history = await self._read(_HISTORY)
            baseline.history = self._parse_history(history)

        zero = zero_spread_metrics(baseline)
        if zero:
            logger.warning("baseline.zero_spread", metrics=zero)

        self._baseline = baseline
        self._baseline_confirmed = True
        return baseline

    async def refresh(self) -> None:
        """Re-read baseline and session state written by other instances."""
        await self.load_baseline()
        await self._sync_session()

    async def reset_baseline(self) -> None:
        self._baseline = None
        self._baseline_confirmed = False
        self._state = CalibrationState()
        self._owner = False
        self._session_persisted = False
        await self._remove(_BASELINE)
        await self._remove(_HISTORY)
        await self._clear_calibration_keys()
        logger.info("baseline.reset")

    async def apply_preset(self, preset: BaselinePreset, *, add_to_history: bool = False) -> Baseline:
        """Adopt a ready-made baseline, abandoning any running session."""
        if self._state.is_calibrating:
            await self.abort_calibration()
        now = self._clock()
        baseline = Baseline(
            mouse=preset.mouse,
            keyboard=preset.keyboard,
            scroll=preset.scroll,
            timestamp=now,
            context=baseline_context(now),
        )
        await self._save_baseline(baseline, add_to_history=add_to_history)
        self._state = CalibrationState(progress=100.0)
        logger.info("baseline.preset_applied", confirmed=self._baseline_confirmed)
        return self._baseline  # type: ignore[return-value]

    async def update_baseline(self, metrics: BehavioralMetrics) -> Baseline | None:
        """Drift medians towards *metrics* (EMA, α = 0.05); spreads are kept."""
        if self._baseline is None:
            return None
        data = self._baseline.model_dump()
        for key in MetricKey:
            current = metrics.value(key)
            if not math.isfinite(current):
                continue
            stat = data[key.group][key.field]
            stat["median"] = _ADAPTIVE_ALPHA * current + (1 - _ADAPTIVE_ALPHA) * stat["median"]
        self._baseline = Baseline.model_validate(data)
        self._baseline_confirmed = await self._write(_BASELINE, self._baseline.model_dump(mode="json"))
        return self._baseline

    # ── Internals ─────────────────────────────────────────────

    def _key(self, name: str) -> str:
        return f"{self._prefix}{name}"

    async def _read(self, name: str) -> tuple[bool, Any]:
        """Return ``(reachable, value)``; unreachable stores read as absent."""
        if self._store is None:
            return False, None
        try:
            return True, await self._store.get(self._key(name))
        except StorageUnavailableError as exc:
            logger.warning("baseline.storage_read_failed", key=name, error=str(exc))
            return False, None

    async def _write(self, name: str, value: Any) -> bool:
        if self._store is None:
            return False
        try:
            return bool(await self._store.set(self._key(name), value))
        except StorageUnavailableError as exc:
            logger.warning("baseline.storage_write_failed", key=name, error=str(exc))
            return False

    async def _remove(self, name: str) -> None:
        if self._store is None:
            return
        try:
            await self._store.remove(self._key(name))
        except StorageUnavailableError as exc:
            logger.warning("baseline.storage_remove_failed", key=name, error=str(exc))

    async def _clear_calibration_keys(self) -> None:
        for name in _CALIBRATION_KEYS:
            await self._remove(name)

    def _state_record(self) -> dict[str, Any]:
        return {
            "is_calibrating": self._state.is_calibrating,
            "start_time": self._state.start_time,
            "session_id": self._state.session_id,
            "owner": self._instance_id,
            "updated_at": self._clock(),
        }

    async def _persist_session(self) -> bool:
        ok = await self._write(_STATE, self._state_record())
        await self._write(_SESSION, self._state.session_id)
        await self._write(_PROGRESS, self._state.progress)
        return ok

    def _progress_at(self, start_time: float | None, now: float | None = None) -> float:
        if start_time is None:
            return 0.0
        now = self._clock() if now is None else now
        elapsed = max(0.0, now - start_time)
        return float(min(100, round(elapsed / self._duration * 100)))

    async def _sync_session(self) -> None:
        """Adopt the persisted session, which is authoritative over memory."""
        if self._store is None:
            return
        found, raw = await self._read(_STATE)
        if not found:
            return

        persisted = raw if isinstance(raw, dict) else {}
        if persisted.get("is_calibrating"):
            session_id = persisted.get("session_id")
            owner = persisted.get("owner")
            claimed_by_us = session_id == self._state.session_id and owner in (None, self._instance_id)
            if self._owner and not claimed_by_us:
                logger.warning(
                    "baseline.ownership_lost",
                    session_id=self._state.session_id,
                    superseded_by=session_id,
                )
                self._owner = False
            elif session_id != self._state.session_id:
                logger.info("baseline.observing_session", session_id=session_id)

            data_found, data = await self._read(_DATA)
            samples = self._parse_samples(data) if data_found else []
            if self._owner and len(self._state.collected_samples) > len(samples):
                samples = list(self._state.collected_samples)

            start_time = persisted.get("start_time")
            self._state = CalibrationState(
                is_calibrating=True,
                start_time=start_time,
                progress=self._progress_at(start_time),
                session_id=session_id,
                collected_samples=samples,
            )
            self._session_persisted = True
            if not self._owner:
                await self._settle_overdue_session(persisted)
        elif self._state.is_calibrating and (self._session_persisted or not self._owner):
            logger.info("baseline.session_ended_elsewhere", session_id=self._state.session_id)
            self._state = CalibrationState()
            self._owner = False
            self._session_persisted = False
            await self.load_baseline()
            if self._baseline is not None:
                self._state.progress = 100.0

    async def _settle_overdue_session(self, persisted: dict[str, Any]) -> None:
        """Close an observed session that has run past its duration.

        With enough samples any instance may finalise it.  Otherwise it is
        left to an owner still extending it, or discarded once that owner
        has stopped writing.
        """
        start_time = self._state.start_time
        now = self._clock()
        if start_time is None or now - start_time < self._duration:
            return

        session_id = self._state.session_id
        samples = len(self._state.collected_samples)
        if samples >= self._min_samples:
            logger.info("baseline.overdue_session_finalised", session_id=session_id, samples=samples)
            self._owner = True
            await self.complete_calibration()
            return

        last_write = persisted.get("updated_at") or start_time
        if now - last_write < _ABANDONED_AFTER_SECONDS:
            return

        logger.warning("baseline.abandoned_session_discarded", session_id=session_id, samples=samples)
        await self._clear_calibration_keys()
        self._state = CalibrationState(progress=100.0 if self._baseline is not None else 0.0)
        self._session_persisted = False

    async def _save_baseline(self, baseline: Baseline, *, add_to_history: bool) -> None:
        if add_to_history:
            baseline.history = await self._updated_history(baseline)
        else:
            baseline.history = []
        self._baseline = baseline
        saved = await self._write(_BASELINE, baseline.model_dump(mode="json"))
        if add_to_history:
            await self._write(_HISTORY, [e.model_dump(mode="json") for e in baseline.history])
        else:
            await self._remove(_HISTORY)
        self._baseline_confirmed = saved
        if not saved:
            logger.error("baseline.save_unconfirmed", stored=self._store is not None)

    async def _updated_history(self, baseline: Baseline) -> list[BaselineHistoryEntry]:
        _, raw = await self._read(_HISTORY)
        history = self._parse_history(raw)
        if not history and self._baseline is not None:
            history = list(self._baseline.history)

        date = datetime.fromtimestamp(baseline.timestamp).date().isoformat()
        entry = BaselineHistoryEntry(
            date=date,
            baseline=BaselinePreset(
                mouse=baseline.mouse, keyboard=baseline.keyboard, scroll=baseline.scroll
            ),
            timestamp=baseline.timestamp,
        )
        history = [e for e in history if e.date != date]
        history.append(entry)
        history.sort(key=lambda e: e.date, reverse=True)
        return history[:_HISTORY_DAYS]

    @staticmethod
    def _parse_samples(raw: Any) -> list[BehavioralMetrics]:
        samples: list[BehavioralMetrics] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                samples.append(BehavioralMetrics.model_validate(item))
            except ValidationError:
                logger.warning("baseline.invalid_sample_skipped")
        return samples

    @staticmethod
    def _parse_history(raw: Any) -> list[BaselineHistoryEntry]:
        history: list[BaselineHistoryEntry] = []
        for item in raw if isinstance(raw, list) else []:
            try:
                history.append(BaselineHistoryEntry.model_validate(item))
            except ValidationError:
                logger.warning("baseline.invalid_history_skipped")
        return history
