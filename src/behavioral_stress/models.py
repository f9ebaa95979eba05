"""Shared Pydantic models used across the framework."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

# ── Enums ─────────────────────────────────────────────────────


class StressLevel(str, Enum):
    """Hysteresis-filtered stress classification."""
    NORMAL = "normal"
    MODERATE = "moderate"
    HIGH = "high"


class StressSeverity(str, Enum):
    """Coarse severity derived from ``(percentage, level)``."""
    NONE = "none"
    MILD = "mild"
    MODERATE = "moderate"
    SEVERE = "severe"


class StressTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


class MetricDirection(str, Enum):
    """Which side of the baseline counts as stress."""
    HIGHER = "higher"
    LOWER = "lower"


# ── Input events ──────────────────────────────────────────────
#
# Timestamps are float seconds.  The core never attaches to a platform
# event system; a host (browser bridge, desktop hook, replay file) builds
# these objects and hands them to ``on_event``.


class PointerMove(BaseModel):
    kind: Literal["pointer_move"] = "pointer_move"
    x: float
    y: float
    timestamp: float


class PointerClick(BaseModel):
    kind: Literal["pointer_click"] = "pointer_click"
    x: float
    y: float
    timestamp: float


class PointerRelease(BaseModel):
    kind: Literal["pointer_release"] = "pointer_release"
    x: float
    y: float
    timestamp: float


class KeyDown(BaseModel):
    """A key press.

    ``sensitive`` is supplied by the host UI layer for password and other
    secret inputs; such events are never captured.
    """
    kind: Literal["key_down"] = "key_down"
    key: str
    code: str = ""
    timestamp: float
    sensitive: bool = False


class KeyUp(BaseModel):
    kind: Literal["key_up"] = "key_up"
    key: str
    code: str = ""
    timestamp: float
    sensitive: bool = False


class Scroll(BaseModel):
    kind: Literal["scroll"] = "scroll"
    scroll_y: float
    timestamp: float


InputEvent = Annotated[
    Union[PointerMove, PointerClick, PointerRelease, KeyDown, KeyUp, Scroll],
    Field(discriminator="kind"),
]

input_event_adapter: TypeAdapter[InputEvent] = TypeAdapter(InputEvent)


def parse_input_event(payload: str | bytes | dict) -> InputEvent:
    """Validate a raw JSON string or dict into a concrete input event."""
    if isinstance(payload, dict):
        return input_event_adapter.validate_python(payload)
    return input_event_adapter.validate_json(payload)
