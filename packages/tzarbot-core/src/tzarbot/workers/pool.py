"""Fixed-size pool of worker slots."""

from __future__ import annotations

import asyncio
import uuid
from collections import Counter
from collections.abc import Collection
from dataclasses import dataclass, field

import structlog

from tzarbot.config import WorkerConfig
from tzarbot.errors import InvalidStateError
from tzarbot.workers.control_plane import ResourceUsage, VMControlPlane
from tzarbot.workers.lifecycle import StatusListener, WorkerLifecycle, WorkerState

logger = structlog.get_logger()


@dataclass(frozen=True)
class WorkerHandle:
    """Proof of an exclusive claim on one worker slot."""

    slot_id: int
    name: str
    claim_id: str = field(default_factory=lambda: str(uuid.uuid4()))


@dataclass(frozen=True)
class PoolHealth:
    capacity: int
    counts: dict[WorkerState, int]
    claimed: int

    @property
    def idle(self) -> int:
        return self.counts.get(WorkerState.IDLE, 0)

    @property
    def offline(self) -> int:
        return self.counts.get(WorkerState.OFFLINE, 0)

    @property
    def healthy(self) -> int:
        """Workers that can still take work now or after recovery."""
        return self.capacity - self.offline

    def as_dict(self) -> dict[str, int]:
        return {state.value: self.counts.get(state, 0) for state in WorkerState} | {
            "capacity": self.capacity,
            "claimed": self.claimed,
        }


class WorkerPool:
    """Matches idle workers to evaluation requests and recovers failed ones.

    All methods run on the event loop thread. ``acquire_idle_worker`` never
    awaits between checking a slot and recording the claim, so two
    concurrent callers can never claim the same worker.
    """

    def __init__(self, control_plane: VMControlPlane, config: WorkerConfig) -> None:
        self._config = config
        self._control_plane = control_plane
        self._workers = [
            WorkerLifecycle(slot, f"{config.name_prefix}{slot}", control_plane, config)
            for slot in range(config.pool_capacity)
        ]
        self._claims: dict[int, str] = {}
        self._recovery: dict[int, asyncio.Task[None]] = {}
        self._closed = False

    @property
    def workers(self) -> list[WorkerLifecycle]:
        return list(self._workers)

    @property
    def capacity(self) -> int:
        return len(self._workers)

    def worker(self, handle: WorkerHandle) -> WorkerLifecycle:
        return self._workers[handle.slot_id]

    def by_name(self, name: str) -> WorkerLifecycle | None:
        return next((w for w in self._workers if w.name == name), None)

    def add_listener(self, listener: StatusListener) -> None:
        for worker in self._workers:
            worker.add_listener(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_all(self) -> None:
        """Provision every slot concurrently; failed ones go into recovery."""
        self._closed = False
        await asyncio.gather(*(w.start() for w in self._workers if w.state is WorkerState.IDLE))
        for worker in self._workers:
            if worker.state is WorkerState.ERROR:
                self._schedule_recovery(worker)
        logger.info("pool_started", **self.health_snapshot().as_dict())

    async def close(self) -> None:
        """Stop scheduling recovery and cancel any in progress; VMs are left as they are."""
        self._closed = True
        tasks = list(self._recovery.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._recovery.clear()

    async def shutdown(self) -> None:
        await self.close()
        for worker in self._workers:
            if worker.state in (WorkerState.IDLE, WorkerState.ERROR) and worker.slot_id not in self._claims:
                await worker.stop()
        logger.info("pool_shutdown", **self.health_snapshot().as_dict())

    # ------------------------------------------------------------------
    # Claims
    # ------------------------------------------------------------------

    def acquire_idle_worker(self, exclude: Collection[int] = ()) -> WorkerHandle | None:
        """Claim an idle worker, preferring fewest consecutive failures then lowest slot.

        Slots in ``exclude`` are skipped. Returns None when nothing is idle;
        callers wait for a worker status event instead of spinning.
        """
        if self._closed:
            return None
        candidates = [
            w
            for w in self._workers
            if w.state is WorkerState.IDLE and w.slot_id not in self._claims and w.slot_id not in exclude
        ]
        if not candidates:
            return None
        chosen = min(candidates, key=lambda w: (w.consecutive_failures, w.slot_id))
        handle = WorkerHandle(slot_id=chosen.slot_id, name=chosen.name)
        self._claims[chosen.slot_id] = handle.claim_id
        logger.debug("worker_claimed", worker=chosen.name, claim_id=handle.claim_id)
        return handle

    def release(self, handle: WorkerHandle) -> None:
        """Return a claimed worker after ``complete_evaluation``.

        A worker released in Error is reset in the background after the
        configured recovery delay.
        """
        if self._claims.get(handle.slot_id) != handle.claim_id:
            raise InvalidStateError(f"stale or foreign handle for {handle.name}")
        worker = self._workers[handle.slot_id]
        if worker.state is WorkerState.EVALUATING:
            raise InvalidStateError(f"{worker.name} released while still evaluating")
        del self._claims[handle.slot_id]
        logger.debug("worker_released", worker=worker.name, state=worker.state.value)
        if worker.state is WorkerState.ERROR:
            self._schedule_recovery(worker)

    def is_claimed(self, slot_id: int) -> bool:
        return slot_id in self._claims

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def health_snapshot(self) -> PoolHealth:
        return PoolHealth(
            capacity=self.capacity,
            counts=dict(Counter(w.state for w in self._workers)),
            claimed=len(self._claims),
        )

    def has_healthy_worker(self, exclude: Collection[int] = ()) -> bool:
        return any(w.state is not WorkerState.OFFLINE and w.slot_id not in exclude for w in self._workers)

    async def usage(self, worker: WorkerLifecycle) -> ResourceUsage:
        if worker.state is WorkerState.OFFLINE:
            return ResourceUsage()
        return await self._control_plane.usage(worker.name)

    async def reprovision(self, name: str) -> bool:
        """Bring an Offline worker back after manual intervention."""
        worker = self.by_name(name)
        if worker is None:
            raise KeyError(name)
        recovered = await worker.reprovision()
        if not recovered:
            self._schedule_recovery(worker)
        return recovered

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    def _schedule_recovery(self, worker: WorkerLifecycle) -> None:
        if self._closed or worker.slot_id in self._recovery:
            return
        task = asyncio.create_task(self._recover(worker), name=f"recover-{worker.name}")
        self._recovery[worker.slot_id] = task
        task.add_done_callback(lambda t, slot=worker.slot_id: self._recovery_done(slot, t))

    def _recovery_done(self, slot_id: int, task: asyncio.Task[None]) -> None:
        self._recovery.pop(slot_id, None)
        if not task.cancelled() and task.exception() is not None:
            logger.error("worker_recovery_failed", worker=self._workers[slot_id].name, error=str(task.exception()))

    async def _recover(self, worker: WorkerLifecycle) -> None:
        while worker.state is WorkerState.ERROR:
            await asyncio.sleep(self._config.recovery_delay_s)
            if await worker.reset():
                logger.info("worker_recovered", worker=worker.name, attempts=worker.recovery_attempts)
