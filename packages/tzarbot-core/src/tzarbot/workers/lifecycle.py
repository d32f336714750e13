"""State machine for one VM evaluation slot."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import structlog

from tzarbot.communication.wire import EvaluationResult
from tzarbot.config import WorkerConfig
from tzarbot.errors import InvalidStateError, ProvisionFailureError, TransportError
from tzarbot.workers.control_plane import VMControlPlane

logger = structlog.get_logger()


class WorkerState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    EVALUATING = "evaluating"
    STOPPING = "stopping"
    ERROR = "error"
    OFFLINE = "offline"


_ALLOWED: dict[WorkerState, frozenset[WorkerState]] = {
    WorkerState.IDLE: frozenset({WorkerState.STARTING, WorkerState.EVALUATING, WorkerState.STOPPING, WorkerState.ERROR}),
    WorkerState.STARTING: frozenset({WorkerState.IDLE, WorkerState.ERROR}),
    WorkerState.EVALUATING: frozenset({WorkerState.IDLE, WorkerState.ERROR}),
    WorkerState.STOPPING: frozenset({WorkerState.IDLE, WorkerState.ERROR}),
    WorkerState.ERROR: frozenset({WorkerState.STARTING, WorkerState.STOPPING, WorkerState.OFFLINE}),
    WorkerState.OFFLINE: frozenset({WorkerState.STARTING}),
}


@dataclass(frozen=True)
class WorkerStatusEvent:
    """Emitted on every worker state transition."""

    slot_id: int
    name: str
    previous: WorkerState
    state: WorkerState
    current_genome_id: str | None
    completed_evaluations: int
    failed_evaluations: int
    consecutive_failures: int
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


StatusListener = Callable[[WorkerStatusEvent], None]

# Errors a control plane may raise while bringing a VM up.
_PROVISION_ERRORS = (asyncio.TimeoutError, ProvisionFailureError, TransportError, OSError)


class WorkerLifecycle:
    """Owns the state of one worker slot.

    Normal cycle: Idle -> Evaluating -> Idle, with Starting while the VM
    boots. Failures go to Error; ``reset`` re-provisions until
    ``max_consecutive_failures`` is reached, after which the worker goes
    Offline and stays there until ``reprovision`` is called.
    """

    def __init__(
        self,
        slot_id: int,
        name: str,
        control_plane: VMControlPlane,
        config: WorkerConfig,
    ) -> None:
        self.slot_id = slot_id
        self.name = name
        self._control_plane = control_plane
        self._config = config
        self._state = WorkerState.IDLE
        self._current_genome_id: str | None = None
        self._completed = 0
        self._failed = 0
        self._consecutive_failures = 0
        self._recovery_attempts = 0
        self._last_error: str | None = None
        self._listeners: list[StatusListener] = []

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def current_genome_id(self) -> str | None:
        return self._current_genome_id

    @property
    def completed_evaluations(self) -> int:
        return self._completed

    @property
    def failed_evaluations(self) -> int:
        return self._failed

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def recovery_attempts(self) -> int:
        return self._recovery_attempts

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(self) -> bool:
        """Idle -> Starting -> Idle once the VM is ready, or Error on timeout.

        Returns True when the worker ended up Idle.
        """
        self._require(WorkerState.IDLE, "start")
        return await self._provision(self._control_plane.start, "start")

    def begin_evaluation(self, genome_id: str) -> None:
        self._require(WorkerState.IDLE, "begin_evaluation")
        self._current_genome_id = genome_id
        self._transition(WorkerState.EVALUATING, f"evaluating {genome_id}")

    def complete_evaluation(self, result: EvaluationResult) -> None:
        self._require(WorkerState.EVALUATING, "complete_evaluation")
        if result.genome_id != self._current_genome_id:
            raise InvalidStateError(
                f"{self.name} is evaluating {self._current_genome_id}, got a result for {result.genome_id}"
            )
        self._current_genome_id = None
        if result.failed:
            self._record_failure(result.error_message or str(result.error_kind))
            self._transition(WorkerState.ERROR, f"evaluation failed: {result.error_kind}")
        else:
            self._completed += 1
            self._consecutive_failures = 0
            self._transition(WorkerState.IDLE, "evaluation complete")

    def abort_evaluation(self, graceful: bool, reason: str = "cancelled") -> None:
        """Drop the in-flight evaluation: Idle when graceful, Error when forced."""
        self._require(WorkerState.EVALUATING, "abort_evaluation")
        self._current_genome_id = None
        if graceful:
            self._transition(WorkerState.IDLE, reason)
        else:
            self._record_failure(reason)
            self._transition(WorkerState.ERROR, reason)

    async def reset(self) -> bool:
        """Error -> Starting, or Error -> Offline once the failure limit is reached.

        Returns True when the worker is back to Idle.
        """
        self._require(WorkerState.ERROR, "reset")
        if self._consecutive_failures >= self._config.max_consecutive_failures:
            self._transition(
                WorkerState.OFFLINE,
                f"{self._consecutive_failures} consecutive failures; manual re-provision required",
            )
            logger.error("worker_offline", worker=self.name, consecutive_failures=self._consecutive_failures)
            return False
        self._recovery_attempts += 1
        return await self._provision(self._control_plane.reset, f"recovery attempt {self._recovery_attempts}")

    async def reprovision(self) -> bool:
        """External signal bringing an Offline worker back through Starting."""
        self._require(WorkerState.OFFLINE, "reprovision")
        self._consecutive_failures = 0
        self._recovery_attempts = 0
        return await self._provision(self._control_plane.start, "reprovision")

    async def stop(self) -> None:
        """Shut the VM down; Offline workers are left alone."""
        if self._state is WorkerState.OFFLINE:
            return
        if self._state not in (WorkerState.IDLE, WorkerState.ERROR):
            raise InvalidStateError(f"{self.name} cannot stop while {self._state.value}")
        self._transition(WorkerState.STOPPING, "stop requested")
        try:
            await self._control_plane.stop(self.name)
        except _PROVISION_ERRORS as exc:
            self._last_error = str(exc)
            self._transition(WorkerState.ERROR, f"stop failed: {exc}")
            return
        self._transition(WorkerState.IDLE, "stopped")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _provision(self, action: Callable[[str], Awaitable[None]], reason: str) -> bool:
        self._transition(WorkerState.STARTING, reason)
        try:
            await asyncio.wait_for(self._boot(action), timeout=self._config.provision_timeout_s)
        except _PROVISION_ERRORS as exc:
            message = str(exc) or f"not ready within {self._config.provision_timeout_s}s"
            self._record_failure(message)
            self._transition(WorkerState.ERROR, f"provision failed: {message}")
            return False
        except asyncio.CancelledError:
            self._transition(WorkerState.ERROR, "provisioning cancelled")
            raise
        self._transition(WorkerState.IDLE, "ready")
        return True

    async def _boot(self, action: Callable[[str], Awaitable[None]]) -> None:
        await action(self.name)
        while not await self._control_plane.is_ready(self.name):
            await asyncio.sleep(self._config.ready_poll_interval_s)

    def _record_failure(self, message: str) -> None:
        self._failed += 1
        self._consecutive_failures += 1
        self._last_error = message

    def _require(self, expected: WorkerState, operation: str) -> None:
        if self._state is not expected:
            raise InvalidStateError(
                f"{operation} requires {self.name} to be {expected.value}, it is {self._state.value}"
            )

    def _transition(self, new_state: WorkerState, reason: str) -> None:
        if new_state not in _ALLOWED[self._state]:
            raise InvalidStateError(f"{self.name}: {self._state.value} -> {new_state.value} is not allowed")
        previous = self._state
        self._state = new_state
        logger.info(
            "worker_state_changed",
            worker=self.name,
            previous=previous.value,
            state=new_state.value,
            reason=reason,
        )
        event = WorkerStatusEvent(
            slot_id=self.slot_id,
            name=self.name,
            previous=previous,
            state=new_state,
            current_genome_id=self._current_genome_id,
            completed_evaluations=self._completed,
            failed_evaluations=self._failed,
            consecutive_failures=self._consecutive_failures,
            reason=reason,
        )
        for listener in self._listeners:
            listener(event)
