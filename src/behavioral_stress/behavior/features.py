"""Feature engineering — rolling-window behavioral metrics from raw input.

This module turns pointer, keyboard and scroll events into
:class:`BehavioralMetrics` snapshots suitable for calibration and scoring.

Key responsibilities
--------------------
1. **Pointer kinematics** — velocity, acceleration and jerk per move,
   direction changes, low-velocity pauses, path efficiency over a short
   rolling path window and a 3×3 viewport zone histogram.
2. **Click patterns** — rage-click bursts and multi-click clusters.
3. **Typing rhythm** — inter-key pauses, hold durations, delete/backspace
   error bursts and per-key statistics.  Sensitive inputs are skipped.
4. **Scroll dynamics** — velocity, bursts, direction changes and
   scroll-to-stop durations.
5. **Windowed aggregation** — :meth:`FeatureExtractor.get_metrics`
   aggregates every buffer over the trailing metric window.  Rates are
   computed over the span actually observed, so a freshly reset extractor
   does not under-report.
"""

from __future__ import annotations

import math
import statistics
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Callable, Iterable, NamedTuple

import structlog

from behavioral_stress.behavior.models import (
    ActivitySummary,
    BehavioralMetrics,
    CapturedEvent,
    KeyboardMetrics,
    KeyStatistic,
    MouseMetrics,
    ScrollMetrics,
    ZoneStatistic,
)
from behavioral_stress.config import METRIC_WINDOW_SECONDS
from behavioral_stress.models import (
    InputEvent,
    KeyDown,
    KeyUp,
    PointerClick,
    PointerMove,
    PointerRelease,
    Scroll,
)

logger = structlog.get_logger(__name__)

# ── Constants ─────────────────────────────────────────────────

_SAMPLE_LIMIT = 200
_POSITION_LIMIT = 500
_CLICK_LIMIT = 50
_KEY_LIMIT = 100
_MULTI_CLICK_LIMIT = 100
_POINTER_PAUSE_LIMIT = 100
_KEY_PAUSE_LIMIT = 50
_SCROLL_STOP_LIMIT = 100

_PATH_WINDOW_SECONDS = 5.0
_BURST_WINDOW_SECONDS = 2.0
_MIN_DT_SECONDS = 0.001

# Pointer
_PAUSE_VELOCITY = 20.0  # px/s
_MIN_POINTER_PAUSE_SECONDS = 0.1
_DIRECTION_CHANGE_RADIANS = math.pi / 4

# Clicks
_CLICK_RADIUS_PX = 50.0
_RAGE_CLICK_WINDOW_SECONDS = 0.5
_RAGE_CLICK_MIN_CLICKS = 3
_RAGE_CLICK_VISIBLE_SECONDS = 5.0
_MULTI_CLICK_WINDOW_SECONDS = 0.4
_MULTI_CLICK_MIN_CLICKS = 2

# Keyboard
_DELETE_KEYS = frozenset({"Backspace", "Delete"})
_ERROR_BURST_MIN_DELETES = 3
_KEY_PAUSE_MIN_SECONDS = 0.05
_KEY_PAUSE_MAX_SECONDS = 10.0
_KEY_STATS_MIN_WINDOW_SECONDS = 60.0

# Scroll
_SCROLL_BURST_VELOCITY = 400.0  # px/s

# Drain export
_EVENT_RETAIN_FRACTION = 0.1


# ── Buffers ───────────────────────────────────────────────────


class _Sample(NamedTuple):
    value: float
    timestamp: float


class _Point(NamedTuple):
    x: float
    y: float
    timestamp: float


class _KeyPress(NamedTuple):
    key: str
    timestamp: float


def _ring(limit: int) -> Callable[[], deque]:
    return lambda: deque(maxlen=limit)


@dataclass
class _MouseBuffers:
    positions: deque = field(default_factory=_ring(_POSITION_LIMIT))
    path: deque = field(default_factory=deque)
    clicks: deque = field(default_factory=_ring(_CLICK_LIMIT))
    velocity: deque = field(default_factory=_ring(_SAMPLE_LIMIT))
    acceleration: deque = field(default_factory=_ring(_SAMPLE_LIMIT))
    jerk: deque = field(default_factory=_ring(_SAMPLE_LIMIT))
    direction_angles: deque = field(default_factory=_ring(_SAMPLE_LIMIT))
    direction_changes: deque = field(default_factory=deque)
    pauses: deque = field(default_factory=_ring(_POINTER_PAUSE_LIMIT))
    path_efficiency: deque = field(default_factory=_ring(_SAMPLE_LIMIT))
    multi_clicks: deque = field(default_factory=_ring(_MULTI_CLICK_LIMIT))
    zones: Counter = field(default_factory=Counter)
    last_position: _Point | None = None
    last_velocity: float = 0.0
    last_acceleration: float = 0.0
    last_direction: float | None = None
    pause_start: float | None = None
    rage_click_at: float | None = None
    last_multi_click_at: float | None = None


@dataclass
class _KeyboardBuffers:
    presses: deque = field(default_factory=_ring(_KEY_LIMIT))
    releases: deque = field(default_factory=_ring(_KEY_LIMIT))
    deletes: deque = field(default_factory=deque)
    delete_burst: deque = field(default_factory=deque)
    error_bursts: deque = field(default_factory=deque)
    pauses: deque = field(default_factory=_ring(_KEY_PAUSE_LIMIT))
    intervals: deque = field(default_factory=_ring(_SAMPLE_LIMIT))
    rhythm: deque = field(default_factory=_ring(_SAMPLE_LIMIT))
    holds: deque = field(default_factory=_ring(_SAMPLE_LIMIT))
    key_counts: Counter = field(default_factory=Counter)
    pending_down: dict[str, float] = field(default_factory=dict)
    last_key_time: float | None = None


@dataclass
class _ScrollBuffers:
    velocity: deque = field(default_factory=_ring(_SAMPLE_LIMIT))
    acceleration: deque = field(default_factory=_ring(_SAMPLE_LIMIT))
    direction_changes: deque = field(default_factory=deque)
    bursts: deque = field(default_factory=deque)
    stops: deque = field(default_factory=_ring(_SCROLL_STOP_LIMIT))
    last_y: float | None = None
    last_timestamp: float | None = None
    last_velocity: float = 0.0
    last_direction: int | None = None
    last_movement_at: float | None = None


# ── Helpers ───────────────────────────────────────────────────


def _mean(values: Iterable[float]) -> float:
    values = list(values)
    return statistics.fmean(values) if values else 0.0


def coefficient_of_variation(values: Iterable[float]) -> float:
    """Population standard deviation divided by |mean| (0 when undefined)."""
    values = list(values)
    if not values:
        return 0.0
    mean = statistics.fmean(values)
    if mean == 0:
        return 0.0
    return statistics.pstdev(values, mu=mean) / abs(mean)


def normalise_angle(angle: float) -> float:
    """Wrap an angle in radians into ``[-π, π]``."""
    while angle > math.pi:
        angle -= 2 * math.pi
    while angle < -math.pi:
        angle += 2 * math.pi
    return angle


def path_efficiency(points: Iterable[_Point]) -> float:
    """Straight-line distance between endpoints over distance travelled.

    Returns 1.0 for fewer than two points or no travel; always in [0, 1].
    """
    points = list(points)
    if len(points) < 2:
        return 1.0
    travelled = sum(
        math.hypot(b.x - a.x, b.y - a.y) for a, b in zip(points, points[1:])
    )
    if travelled == 0:
        return 1.0
    straight = math.hypot(points[-1].x - points[0].x, points[-1].y - points[0].y)
    return max(0.0, min(1.0, straight / travelled))


def _within_radius(points: list, radius: float) -> bool:
    first = points[0]
    return all(math.hypot(p.x - first.x, p.y - first.y) < radius for p in points)


def _trim_before(buffer: deque, cutoff: float) -> None:
    """Drop leading entries older than *cutoff* (buffers are time-ordered)."""
    while buffer:
        head = buffer[0]
        stamp = head if isinstance(head, (int, float)) else head.timestamp
        if stamp >= cutoff:
            break
        buffer.popleft()


def _is_sensitive_default(event: KeyDown | KeyUp) -> bool:
    return event.sensitive


# ── Feature extractor ─────────────────────────────────────────


class FeatureExtractor:
    """Rolling-window aggregation of raw input into behavioral metrics.

    Parameters
    ----------
    window_seconds : float
        Trailing metric window for :meth:`get_metrics` (default 60 s).
    viewport : tuple[float, float]
        Viewport width and height used for the 3×3 zone histogram.
    sensitive_input : Callable[[KeyDown | KeyUp], bool] | None
        Capability supplied by the host UI layer; returns True for keys
        typed into password or other secret fields, which are skipped.
    clock : Callable[[], float]
        Time source in seconds, used when no explicit ``now`` is given.
    """

    def __init__(
        self,
        window_seconds: float = METRIC_WINDOW_SECONDS,
        viewport: tuple[float, float] = (1920.0, 1080.0),
        sensitive_input: Callable[[KeyDown | KeyUp], bool] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._window = float(window_seconds)
        self._viewport = (float(viewport[0]), float(viewport[1]))
        self._is_sensitive = sensitive_input or _is_sensitive_default
        self._clock = clock
        self._mouse = _MouseBuffers()
        self._keyboard = _KeyboardBuffers()
        self._scroll = _ScrollBuffers()
        self._started_at = clock()

    @property
    def window_seconds(self) -> float:
        return self._window

    def set_viewport(self, width: float, height: float) -> None:
        if width <= 0 or height <= 0:
            logger.warning("features.invalid_viewport", width=width, height=height)
            return
        self._viewport = (float(width), float(height))

    # ── Ingestion ─────────────────────────────────────────────

    def on_event(self, event: InputEvent) -> None:
        """Route a typed input event to the matching handler."""
        if isinstance(event, PointerMove):
            self.on_pointer_move(event.x, event.y, event.timestamp)
        elif isinstance(event, PointerClick):
            self.on_click(event.x, event.y, event.timestamp)
        elif isinstance(event, PointerRelease):
            self.on_pointer_release(event.x, event.y, event.timestamp)
        elif isinstance(event, KeyDown):
            if not self._is_sensitive(event):
                self.on_key_down(event.key, event.code, event.timestamp)
        elif isinstance(event, KeyUp):
            if not self._is_sensitive(event):
                self.on_key_up(event.key, event.code, event.timestamp)
        elif isinstance(event, Scroll):
            self.on_scroll(event.scroll_y, event.timestamp)
        else:
            logger.warning("features.unknown_event", event_type=type(event).__name__)

    def on_pointer_move(self, x: float, y: float, timestamp: float) -> None:
        m = self._mouse
        last = m.last_position

        if last is not None and timestamp > last.timestamp:
            dt = max(timestamp - last.timestamp, _MIN_DT_SECONDS)
            dx, dy = x - last.x, y - last.y
            velocity = math.hypot(dx, dy) / dt
            acceleration = (velocity - m.last_velocity) / dt
            jerk = (acceleration - m.last_acceleration) / dt

            m.velocity.append(_Sample(velocity, timestamp))
            m.acceleration.append(_Sample(acceleration, timestamp))
            m.jerk.append(_Sample(jerk, timestamp))
            m.last_velocity = velocity
            m.last_acceleration = acceleration

            angle = math.atan2(dy, dx)
            m.direction_angles.append(_Sample(angle, timestamp))
            if m.last_direction is not None:
                turn = normalise_angle(angle - m.last_direction)
                if abs(turn) > _DIRECTION_CHANGE_RADIANS:
                    m.direction_changes.append(timestamp)
                    _trim_before(m.direction_changes, timestamp - self._window)
            m.last_direction = angle

            if velocity < _PAUSE_VELOCITY:
                if m.pause_start is None:
                    m.pause_start = timestamp
            elif m.pause_start is not None:
                duration = timestamp - m.pause_start
                if duration >= _MIN_POINTER_PAUSE_SECONDS:
                    m.pauses.append(_Sample(duration, timestamp))
                m.pause_start = None

            m.path.append(_Point(x, y, timestamp))
            _trim_before(m.path, timestamp - _PATH_WINDOW_SECONDS)
            m.path_efficiency.append(_Sample(path_efficiency(m.path), timestamp))
        elif last is None:
            m.path.append(_Point(x, y, timestamp))

        m.last_position = _Point(x, y, timestamp)
        self._record_position(x, y, timestamp)

    def on_pointer_release(self, x: float, y: float, timestamp: float) -> None:
        self._record_position(x, y, timestamp)

    def on_click(self, x: float, y: float, timestamp: float) -> None:
        m = self._mouse
        m.clicks.append(_Point(x, y, timestamp))
        _trim_before(m.clicks, timestamp - self._window)
        self._detect_rage_click(timestamp)
        self._track_multi_click(timestamp)

    def on_key_down(self, key: str, code: str = "", timestamp: float | None = None) -> None:
        now = self._clock() if timestamp is None else timestamp
        k = self._keyboard

        if key in _DELETE_KEYS:
            k.deletes.append(now)
            k.delete_burst.append(now)
            _trim_before(k.delete_burst, now - _BURST_WINDOW_SECONDS)
            if len(k.delete_burst) >= _ERROR_BURST_MIN_DELETES:
                k.error_bursts.append(now)
                _trim_before(k.error_bursts, now - self._window)
        _trim_before(k.deletes, now - self._window)

        if k.last_key_time is not None:
            gap = now - k.last_key_time
            # Gaps outside the band are idle time, not typing pauses.
            if _KEY_PAUSE_MIN_SECONDS < gap < _KEY_PAUSE_MAX_SECONDS:
                k.pauses.append(_Sample(gap, now))
                k.intervals.append(_Sample(gap, now))
                k.rhythm.append(_Sample(gap, now))

        k.presses.append(_KeyPress(key, now))
        k.key_counts[_key_name(key)] += 1
        k.pending_down[code or key] = now
        k.last_key_time = now

    def on_key_up(self, key: str, code: str = "", timestamp: float | None = None) -> None:
        now = self._clock() if timestamp is None else timestamp
        k = self._keyboard
        pressed_at = k.pending_down.pop(code or key, None)
        if pressed_at is not None:
            k.holds.append(_Sample(max(0.0, now - pressed_at), now))
        k.releases.append(_KeyPress(key, now))

    def on_scroll(self, scroll_y: float, timestamp: float) -> None:
        s = self._scroll
        if s.last_timestamp is None or s.last_y is None:
            s.last_y, s.last_timestamp = scroll_y, timestamp
            return

        dy = scroll_y - s.last_y
        dt = timestamp - s.last_timestamp

        if dt > 0 and dy != 0:
            velocity = abs(dy) / max(dt, _MIN_DT_SECONDS)
            acceleration = (velocity - s.last_velocity) / dt
            s.velocity.append(_Sample(velocity, timestamp))
            s.acceleration.append(_Sample(acceleration, timestamp))
            s.last_velocity = velocity

            direction = 1 if dy > 0 else -1
            if s.last_direction is not None and direction != s.last_direction:
                s.direction_changes.append(timestamp)
                _trim_before(s.direction_changes, timestamp - self._window)
            s.last_direction = direction

            if velocity > _SCROLL_BURST_VELOCITY:
                s.bursts.append(timestamp)
                _trim_before(s.bursts, timestamp - self._window)
            s.last_movement_at = timestamp
        else:
            if (
                s.last_velocity > 0
                and s.last_movement_at is not None
                and timestamp - s.last_movement_at < self._window
            ):
                s.stops.append(_Sample(timestamp - s.last_movement_at, timestamp))
            s.last_velocity = 0.0

        s.last_y, s.last_timestamp = scroll_y, timestamp

    # ── Aggregation ───────────────────────────────────────────

    def get_metrics(self, now: float | None = None) -> BehavioralMetrics:
        """Aggregate all buffers over the trailing metric window."""
        now = self._clock() if now is None else now
        observed = min(self._window, max(1.0, now - self._started_at))
        minutes = observed / 60.0

        m, k, s = self._mouse, self._keyboard, self._scroll

        velocity = self._recent_values(m.velocity, now)
        acceleration = self._recent_values(m.acceleration, now)
        jerk = self._recent_values(m.jerk, now)
        efficiency = self._recent_values(m.path_efficiency, now)
        pauses = self._recent_values(m.pauses, now)
        clicks = self._count_recent(m.clicks, now)
        multi_clicks = self._count_recent(m.multi_clicks, now)

        scroll_velocity = _mean(self._recent_values(s.velocity, now))

        mouse = MouseMetrics(
            movement_velocity=_mean(velocity),
            movement_acceleration=_mean(acceleration),
            mouse_jitter=_mean(abs(j) for j in jerk),
            click_frequency_per_min=clicks / minutes,
            multi_click_rate_per_min=multi_clicks / minutes,
            path_efficiency=_mean(efficiency) if efficiency else 1.0,
            pause_ratio=min(1.0, sum(pauses) / observed),
            scroll_velocity=scroll_velocity,
            rage_click_detected=(
                m.rage_click_at is not None
                and now - m.rage_click_at < _RAGE_CLICK_VISIBLE_SECONDS
            ),
        )

        presses = self._count_recent(k.presses, now)
        deletes = self._count_recent(k.deletes, now)
        key_pauses = self._recent_values(k.pauses, now)

        keyboard = KeyboardMetrics(
            typing_error_rate=(deletes / presses) * 10 if presses else 0.0,
            typing_speed_per_min=presses / minutes,
            pause_regularity=coefficient_of_variation(key_pauses),
            avg_pause_duration=_mean(key_pauses),
        )

        metrics = BehavioralMetrics(
            mouse=mouse,
            keyboard=keyboard,
            scroll=ScrollMetrics(velocity=scroll_velocity),
            timestamp=now,
        )
        logger.debug(
            "features.snapshot",
            observed_seconds=round(observed, 2),
            velocity=round(mouse.movement_velocity, 2),
            clicks_per_min=round(mouse.click_frequency_per_min, 2),
            keys_per_min=round(keyboard.typing_speed_per_min, 2),
        )
        return metrics

    # ── Lifecycle / export ───────────────────────────────────

    def reset(self) -> None:
        """Clear every buffer and restart the observation span."""
        self._mouse = _MouseBuffers()
        self._keyboard = _KeyboardBuffers()
        self._scroll = _ScrollBuffers()
        self._started_at = self._clock()

    def get_events(self) -> list[CapturedEvent]:
        """Return pointer velocities and typing pauses for forwarding."""
        events = [
            CapturedEvent(type="pointer_velocity", value=v, timestamp=t)
            for v, t in self._mouse.velocity
        ]
        events.extend(
            CapturedEvent(type="key_pause", value=d, timestamp=t)
            for d, t in self._keyboard.pauses
        )
        events.sort(key=lambda e: e.timestamp)
        return events

    def clear_events(self) -> None:
        """Drain exported buffers, keeping the newest 10 % for continuity.

        Positions and clicks are left untouched; other features need them.
        """
        for buffer in (self._mouse.velocity, self._keyboard.pauses):
            keep = int(len(buffer) * _EVENT_RETAIN_FRACTION)
            while len(buffer) > keep:
                buffer.popleft()

    # ── Diagnostics ──────────────────────────────────────────

    def get_key_statistics(self, now: float | None = None) -> list[KeyStatistic]:
        """Per-key press counts and presses-per-minute, most used first."""
        now = self._clock() if now is None else now
        presses = self._keyboard.presses
        first = presses[0].timestamp if presses else now
        span = max(_KEY_STATS_MIN_WINDOW_SECONDS, now - first)

        recent: Counter = Counter(
            _key_name(p.key) for p in presses if now - p.timestamp < span
        )
        stats = [
            KeyStatistic(key=key, count=count, frequency=recent[key] / span * 60)
            for key, count in self._keyboard.key_counts.items()
        ]
        return sorted(stats, key=lambda s: s.count, reverse=True)

    def get_mouse_zone_statistics(self) -> list[ZoneStatistic]:
        zones = self._mouse.zones
        total = sum(zones.values())
        return [
            ZoneStatistic(
                zone=zone,
                count=zones[zone],
                percentage=(zones[zone] / total * 100) if total else 0.0,
            )
            for zone in range(9)
        ]

    def get_activity_summary(self, now: float | None = None) -> ActivitySummary:
        now = self._clock() if now is None else now
        m, k, s = self._mouse, self._keyboard, self._scroll
        return ActivitySummary(
            direction_changes=self._count_recent(m.direction_changes, now),
            error_bursts=self._count_recent(k.error_bursts, now),
            scroll_bursts=self._count_recent(s.bursts, now),
            scroll_direction_changes=self._count_recent(s.direction_changes, now),
            scroll_stops=self._count_recent(s.stops, now),
            mean_key_hold=_mean(self._recent_values(k.holds, now)),
            mean_inter_key_interval=_mean(self._recent_values(k.intervals, now)),
            rage_click_detected=(
                m.rage_click_at is not None
                and now - m.rage_click_at < _RAGE_CLICK_VISIBLE_SECONDS
            ),
        )

    # ── Internals ────────────────────────────────────────────

    def _record_position(self, x: float, y: float, timestamp: float) -> None:
        self._mouse.positions.append(_Point(x, y, timestamp))
        self._mouse.zones[self._zone_of(x, y)] += 1

    def _zone_of(self, x: float, y: float) -> int:
        width, height = self._viewport
        col = min(2, max(0, int(x // (width / 3))))
        row = min(2, max(0, int(y // (height / 3))))
        return row * 3 + col

    def _detect_rage_click(self, now: float) -> None:
        recent = [c for c in self._mouse.clicks if now - c.timestamp < _RAGE_CLICK_WINDOW_SECONDS]
        if len(recent) >= _RAGE_CLICK_MIN_CLICKS and _within_radius(recent, _CLICK_RADIUS_PX):
            self._mouse.rage_click_at = now
            logger.debug("features.rage_click", clicks=len(recent))

    def _track_multi_click(self, now: float) -> None:
        m = self._mouse
        recent = [c for c in m.clicks if now - c.timestamp < _MULTI_CLICK_WINDOW_SECONDS]
        if len(recent) < _MULTI_CLICK_MIN_CLICKS or not _within_radius(recent, _CLICK_RADIUS_PX):
            return
        # One cluster per window so a triple click is not counted twice.
        if m.last_multi_click_at is None or now - m.last_multi_click_at > _MULTI_CLICK_WINDOW_SECONDS:
            m.multi_clicks.append(now)
            m.last_multi_click_at = now

    def _recent_values(self, samples: Iterable[_Sample], now: float) -> list[float]:
        return [s.value for s in samples if now - s.timestamp < self._window]

    def _count_recent(self, entries: Iterable, now: float) -> int:
        count = 0
        for entry in entries:
            stamp = entry if isinstance(entry, (int, float)) else entry.timestamp
            if now - stamp < self._window:
                count += 1
        return count


def _key_name(key: str) -> str:
    return key.lower() if len(key) == 1 else key
