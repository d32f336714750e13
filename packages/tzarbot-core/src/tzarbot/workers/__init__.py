"""VM worker slots, their lifecycle and the pool that schedules them."""

from __future__ import annotations

from tzarbot.workers.control_plane import ResourceUsage, VMControlPlane
from tzarbot.workers.lifecycle import WorkerLifecycle, WorkerState, WorkerStatusEvent
from tzarbot.workers.pool import PoolHealth, WorkerHandle, WorkerPool

__all__ = [
    "PoolHealth",
    "ResourceUsage",
    "VMControlPlane",
    "WorkerHandle",
    "WorkerLifecycle",
    "WorkerPool",
    "WorkerState",
    "WorkerStatusEvent",
]
