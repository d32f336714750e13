"""Game-control actions produced by a genome's network."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, IntEnum


class ActionCategory(str, Enum):
    NONE = "none"
    MOVEMENT = "movement"
    CLICK = "click"
    DRAG = "drag"
    HOTKEY = "hotkey"
    SCROLL = "scroll"
    SPECIAL_KEY = "special_key"


class ActionType(IntEnum):
    """Action codes; the tens digit encodes the category."""
    NONE = 0
    MOUSE_MOVE = 1
    LEFT_CLICK = 10
    RIGHT_CLICK = 11
    DOUBLE_CLICK = 12
    DRAG_START = 20
    DRAG_END = 21
    DRAG_SELECT = 22
    HOTKEY = 30
    HOTKEY_CTRL = 31
    SCROLL_UP = 40
    SCROLL_DOWN = 41
    ESCAPE = 50
    ENTER = 51

    @property
    def category(self) -> ActionCategory:
        if self is ActionType.NONE:
            return ActionCategory.NONE
        if self is ActionType.MOUSE_MOVE:
            return ActionCategory.MOVEMENT
        return _CATEGORY_BY_DECADE[self.value // 10]


_CATEGORY_BY_DECADE = {
    1: ActionCategory.CLICK,
    2: ActionCategory.DRAG,
    3: ActionCategory.HOTKEY,
    4: ActionCategory.SCROLL,
    5: ActionCategory.SPECIAL_KEY,
}

_HOTKEY_TYPES = frozenset({ActionType.HOTKEY, ActionType.HOTKEY_CTRL})


def clamp_unit(value: float) -> float:
    """Clamp to [-1, 1]; NaN maps to 0."""
    if math.isnan(value):
        return 0.0
    return max(-1.0, min(1.0, value))


@dataclass(frozen=True)
class GameAction:
    """One action decoded from a network output for a given frame.

    Mouse deltas are always clamped into [-1, 1]. ``hotkey_number`` is
    required for hotkey actions and must be 0-9; ``confidence`` must lie
    in [0, 1].
    """

    type: ActionType = ActionType.NONE
    mouse_delta_x: float = 0.0
    mouse_delta_y: float = 0.0
    hotkey_number: int | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    source_frame_id: int = 0
    confidence: float = 1.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", ActionType(self.type))
        object.__setattr__(self, "mouse_delta_x", clamp_unit(float(self.mouse_delta_x)))
        object.__setattr__(self, "mouse_delta_y", clamp_unit(float(self.mouse_delta_y)))

        if self.hotkey_number is not None and not 0 <= self.hotkey_number <= 9:
            raise ValueError(f"hotkey_number must be 0-9, got {self.hotkey_number}")
        if self.type in _HOTKEY_TYPES and self.hotkey_number is None:
            raise ValueError(f"{self.type.name} requires a hotkey_number")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence}")

    @property
    def category(self) -> ActionCategory:
        return self.type.category

    @property
    def is_no_op(self) -> bool:
        return self.type is ActionType.NONE

    @classmethod
    def no_op(cls, source_frame_id: int = 0) -> GameAction:
        return cls(ActionType.NONE, source_frame_id=source_frame_id)

    @classmethod
    def mouse_move(cls, dx: float, dy: float, source_frame_id: int = 0, confidence: float = 1.0) -> GameAction:
        return cls(
            ActionType.MOUSE_MOVE,
            mouse_delta_x=dx,
            mouse_delta_y=dy,
            source_frame_id=source_frame_id,
            confidence=confidence,
        )

    @classmethod
    def left_click(cls, source_frame_id: int = 0) -> GameAction:
        return cls(ActionType.LEFT_CLICK, source_frame_id=source_frame_id)

    @classmethod
    def right_click(cls, source_frame_id: int = 0) -> GameAction:
        return cls(ActionType.RIGHT_CLICK, source_frame_id=source_frame_id)

    @classmethod
    def hotkey(cls, number: int, ctrl: bool = False, source_frame_id: int = 0) -> GameAction:
        return cls(
            ActionType.HOTKEY_CTRL if ctrl else ActionType.HOTKEY,
            hotkey_number=number,
            source_frame_id=source_frame_id,
        )
