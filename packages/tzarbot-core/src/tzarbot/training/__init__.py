"""Training control loop, its state, checkpoints and observer feeds."""

from __future__ import annotations

from tzarbot.training.checkpoint import Checkpoint, CheckpointStore
from tzarbot.training.observers import ObserverHub
from tzarbot.training.orchestrator import OrchestratorService
from tzarbot.training.state import ActivityLevel, DashboardSnapshot, TrainingState, TrainingStatus

__all__ = [
    "ActivityLevel",
    "Checkpoint",
    "CheckpointStore",
    "DashboardSnapshot",
    "ObserverHub",
    "OrchestratorService",
    "TrainingState",
    "TrainingStatus",
]
