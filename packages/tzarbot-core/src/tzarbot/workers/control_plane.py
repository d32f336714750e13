"""Protocol for the hypervisor that hosts evaluation VMs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ResourceUsage:
    cpu_percent: float = 0.0
    memory_percent: float = 0.0


class VMControlPlane(Protocol):
    """Opaque start/stop/health primitives for a VM addressed by name."""

    async def start(self, name: str) -> None: ...
    async def stop(self, name: str) -> None: ...
    async def reset(self, name: str) -> None: ...
    async def is_ready(self, name: str) -> bool: ...
    async def usage(self, name: str) -> ResourceUsage: ...
