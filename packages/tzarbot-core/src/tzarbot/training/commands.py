"""Commands delivered to the control loop from observers."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class CommandKind(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    SAVE_CHECKPOINT = "save_checkpoint"
    STOP = "stop"


@dataclass
class Command:
    """A request for the control loop; ``done`` resolves once it has been applied."""

    kind: CommandKind
    drain_timeout_s: float | None = None
    done: asyncio.Future[Any] = field(default_factory=lambda: asyncio.get_running_loop().create_future())

    def resolve(self, value: Any = None) -> None:
        if not self.done.done():
            self.done.set_result(value)

    def fail(self, exc: BaseException) -> None:
        if not self.done.done():
            self.done.set_exception(exc)
