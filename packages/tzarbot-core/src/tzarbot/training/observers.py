"""Feeds published to dashboard observers."""

from __future__ import annotations

from collections import deque
from collections.abc import Callable

import structlog

from tzarbot.evolution.statistics import GenerationRecord
from tzarbot.training.state import ActivityEntry, ActivityLevel, DashboardSnapshot
from tzarbot.workers.lifecycle import WorkerStatusEvent

logger = structlog.get_logger()

GenerationListener = Callable[[GenerationRecord], None]
ActivityListener = Callable[[ActivityEntry], None]
WorkerListener = Callable[[WorkerStatusEvent], None]
SnapshotListener = Callable[[DashboardSnapshot], None]

_LOG_METHOD = {
    ActivityLevel.INFO: "info",
    ActivityLevel.SUCCESS: "info",
    ActivityLevel.WARNING: "warning",
    ActivityLevel.ERROR: "error",
}


class ObserverHub:
    """Bounded, append-only generation and activity feeds plus push subscriptions.

    A real-time transport (websocket hub, SSE endpoint) subscribes here;
    late joiners read the retained tail of each feed.
    """

    def __init__(self, history_limit: int = 500, activity_limit: int = 100) -> None:
        self._generations: deque[GenerationRecord] = deque(maxlen=history_limit)
        self._activity: deque[ActivityEntry] = deque(maxlen=activity_limit)
        self._generation_listeners: list[GenerationListener] = []
        self._activity_listeners: list[ActivityListener] = []
        self._worker_listeners: list[WorkerListener] = []
        self._snapshot_listeners: list[SnapshotListener] = []

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_generation(self, listener: GenerationListener) -> None:
        self._generation_listeners.append(listener)

    def on_activity(self, listener: ActivityListener) -> None:
        self._activity_listeners.append(listener)

    def on_worker_status(self, listener: WorkerListener) -> None:
        self._worker_listeners.append(listener)

    def on_snapshot(self, listener: SnapshotListener) -> None:
        self._snapshot_listeners.append(listener)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_generation(self, record: GenerationRecord) -> None:
        self._generations.append(record)
        for listener in self._generation_listeners:
            listener(record)

    def preload_generations(self, records: list[GenerationRecord]) -> None:
        """Seed the generation feed (e.g. from a checkpoint) without notifying listeners."""
        self._generations.extend(records)

    def publish_worker_status(self, event: WorkerStatusEvent) -> None:
        for listener in self._worker_listeners:
            listener(event)

    def publish_snapshot(self, snapshot: DashboardSnapshot) -> None:
        for listener in self._snapshot_listeners:
            listener(snapshot)

    def activity(
        self,
        level: ActivityLevel,
        message: str,
        generation: int | None = None,
        genome_id: str | None = None,
    ) -> ActivityEntry:
        entry = ActivityEntry(level=level, message=message, generation=generation, genome_id=genome_id)
        self._activity.append(entry)
        getattr(logger, _LOG_METHOD[level])(
            "activity", level=level.value, message=message, generation=generation, genome_id=genome_id
        )
        for listener in self._activity_listeners:
            listener(entry)
        return entry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def generation_feed(self) -> list[GenerationRecord]:
        return list(self._generations)

    def recent_activity(self, count: int = 50) -> list[ActivityEntry]:
        if count <= 0:
            return []
        return list(self._activity)[-count:]
