"""Observation and action vocabulary exchanged between a worker and the game."""

from __future__ import annotations

from tzarbot.game.actions import ActionCategory, ActionType, GameAction
from tzarbot.game.frames import PixelFormat, ScreenFrame, forwardable_frames

__all__ = [
    "ActionCategory",
    "ActionType",
    "GameAction",
    "PixelFormat",
    "ScreenFrame",
    "forwardable_frames",
]
