"""Orchestrator service: the training control loop.

One task owns TrainingState. It dispatches pending genomes to idle workers,
records results by genome id as they arrive, and once every genome of the
generation has a result it computes statistics, breeds the next population,
checkpoints and publishes. Everything else (evaluation tasks, worker status
changes, observer commands) reaches the loop as a message on one queue.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import numpy as np
import structlog

from tzarbot.communication.channel import RemoteChannel
from tzarbot.communication.communicator import Communicator
from tzarbot.communication.wire import EvaluationRequest, EvaluationResult
from tzarbot.config import OrchestratorConfig
from tzarbot.errors import (
    ArchiveError,
    CheckpointError,
    CorruptPayloadError,
    ErrorKind,
    ExhaustedRetriesError,
    InvalidStateError,
    TransportError,
)
from tzarbot.evolution.breeder import Breeder
from tzarbot.evolution.fitness import FitnessCalculator, GameFitnessCalculator
from tzarbot.evolution.rating import update_rating
from tzarbot.evolution.statistics import GenerationRecord, summarize_generation
from tzarbot.genome.model import NetworkGenome
from tzarbot.persistence.archive import GenerationArchive
from tzarbot.training.checkpoint import Checkpoint, CheckpointStore
from tzarbot.training.commands import Command, CommandKind
from tzarbot.training.observers import ObserverHub
from tzarbot.training.state import (
    ActivityEntry,
    ActivityLevel,
    DashboardSnapshot,
    GenomeSummary,
    TrainingState,
    TrainingStatus,
    WorkerStatusView,
)
from tzarbot.workers.control_plane import VMControlPlane
from tzarbot.workers.lifecycle import WorkerState, WorkerStatusEvent
from tzarbot.workers.pool import WorkerHandle, WorkerPool

logger = structlog.get_logger()


@dataclass(frozen=True)
class _EvaluationDone:
    genome_id: str
    slot_id: int
    result: EvaluationResult


@dataclass(frozen=True)
class _WorkerChanged:
    event: WorkerStatusEvent


@dataclass
class _Dispatch:
    task: asyncio.Task[None]
    handle: WorkerHandle


_Event = Command | _EvaluationDone | _WorkerChanged


class OrchestratorService:
    """Drives generations over a WorkerPool until stopped."""

    def __init__(
        self,
        config: OrchestratorConfig,
        pool: WorkerPool,
        communicator: Communicator,
        checkpoints: CheckpointStore,
        *,
        breeder: Breeder | None = None,
        observers: ObserverHub | None = None,
        archive: GenerationArchive | None = None,
    ) -> None:
        self._config = config
        self._pool = pool
        self._communicator = communicator
        self._checkpoints = checkpoints
        self._breeder = breeder or Breeder(config.evolution, config.network)
        self._observers = observers or ObserverHub(config.history_limit, config.activity_limit)
        self._archive = archive
        self._rng = np.random.default_rng(config.evolution.seed)
        self._state = TrainingState(current_stage=config.evolution.initial_stage)

        self._events: asyncio.Queue[_Event] = asyncio.Queue()
        self._in_flight: dict[str, _Dispatch] = {}
        self._dispatch_attempts: dict[str, int] = {}
        self._failed_slots: dict[str, set[int]] = {}
        self._running = False
        self._checkpoint_pending = False
        self._graceful_cancel = True
        self._drain_deadline: float | None = None
        self._stop_commands: list[Command] = []
        self._generation_started = 0.0

        pool.add_listener(self._on_worker_event)

    @classmethod
    def create(
        cls,
        config: OrchestratorConfig,
        control_plane: VMControlPlane,
        channel: RemoteChannel,
        fitness: FitnessCalculator | None = None,
        **kwargs: Any,
    ) -> OrchestratorService:
        """Wire the default pool, communicator and checkpoint store.

        ``fitness`` defaults to the weighted game statistics configured in
        ``evaluation.fitness``.
        """
        return cls(
            config,
            WorkerPool(control_plane, config.workers),
            Communicator(
                channel,
                config.evaluation.retry,
                fitness or GameFitnessCalculator(config.evaluation.fitness),
            ),
            CheckpointStore(config.checkpoint),
            **kwargs,
        )

    @property
    def state(self) -> TrainingState:
        return self._state

    @property
    def pool(self) -> WorkerPool:
        return self._pool

    @property
    def observers(self) -> ObserverHub:
        return self._observers

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def restore(self) -> bool:
        """Resume from the checkpoint file if one exists. Call before ``run``.

        Raises CheckpointError if the file exists but cannot be used.
        """
        if self._running:
            raise InvalidStateError("cannot restore while the control loop is running")
        checkpoint = await self._checkpoints.load()
        if checkpoint is None:
            return False
        try:
            state = checkpoint.to_state()
        except CorruptPayloadError as exc:
            raise CheckpointError(f"checkpoint population is corrupt: {exc}") from exc

        self._state = state
        if checkpoint.rng_state is not None:
            self._rng.bit_generator.state = checkpoint.rng_state
        self._observers.preload_generations(state.history)
        self._observers.activity(
            ActivityLevel.INFO,
            f"Resumed from checkpoint at generation {state.current_generation} "
            f"({len(state.results)}/{len(state.population)} genomes already scored)",
            generation=state.current_generation,
        )
        return True

    async def run(self) -> TrainingState:
        """Run the control loop until stopped or ``max_generations`` is reached."""
        if self._running:
            raise InvalidStateError("control loop is already running")
        state = self._state
        state.transition(TrainingStatus.RUNNING)
        self._running = True

        if not state.population:
            state.population = self._breeder.initial_population(self._rng)
        if state.training_started_at is None:
            state.training_started_at = datetime.now(UTC)
        self._generation_started = asyncio.get_running_loop().time()

        logger.info(
            "training_started",
            generation=state.current_generation,
            population=len(state.population),
            pending=len(state.pending()),
            pool_capacity=self._pool.capacity,
        )
        self._observers.activity(
            ActivityLevel.INFO,
            f"Training started at generation {state.current_generation} "
            f"with {self._pool.capacity} workers",
            generation=state.current_generation,
        )

        reporter = asyncio.create_task(self._report_status(), name="pool-status-report")
        try:
            if self._archive is not None:
                await self._archive_call(self._archive.start_run(self._config))
            await self._pool.start_all()
            await self._loop()
            await self._shutdown()
        except asyncio.CancelledError:
            logger.warning("training_cancelled", generation=state.current_generation, in_flight=len(self._in_flight))
            await self._cancel_in_flight(graceful=False)
            await self._pool.close()
            raise
        finally:
            reporter.cancel()
            self._running = False
            self._fail_waiting_commands()
        return state

    # ------------------------------------------------------------------
    # Commands (safe to call from any task)
    # ------------------------------------------------------------------

    async def pause(self) -> None:
        """Stop new dispatches; in-flight evaluations run to completion."""
        await self._submit(Command(CommandKind.PAUSE))

    async def resume(self) -> None:
        await self._submit(Command(CommandKind.RESUME))

    async def save_checkpoint(self) -> Path:
        """Write a snapshot now; generation advancement waits for it."""
        return await self._submit(Command(CommandKind.SAVE_CHECKPOINT))

    async def stop(self, drain_timeout_s: float | None = None) -> None:
        """Stop dispatching, wait for in-flight work, flush a checkpoint and stop workers.

        With ``drain_timeout_s`` set, evaluations still running after that
        long are cancelled and their workers returned to Idle.
        """
        if not self._running:
            if self._state.status is TrainingStatus.IDLE:
                self._state.transition(TrainingStatus.STOPPED)
            return
        await self._submit(Command(CommandKind.STOP, drain_timeout_s=drain_timeout_s))

    async def _submit(self, command: Command) -> Any:
        if not self._running:
            raise InvalidStateError(f"cannot {command.kind.value}: control loop is not running")
        self._events.put_nowait(command)
        return await command.done

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def snapshot(self) -> DashboardSnapshot:
        state = self._state
        last = state.history[-1] if state.history else None
        return DashboardSnapshot(
            status=state.status,
            current_generation=state.current_generation,
            current_stage=state.current_stage,
            best_fitness=state.best_fitness if state.best_fitness is not None else 0.0,
            average_fitness=last.average_fitness if last else 0.0,
            population_size=len(state.population),
            total_games_played=state.total_games_played,
            win_rate=state.overall_win_rate,
            training_started_at=state.training_started_at,
        )

    def history(self) -> list[GenerationRecord]:
        return list(self._state.history)

    def population_summaries(self) -> list[GenomeSummary]:
        initial = self._config.evolution.initial_elo
        summaries = []
        for genome in self._state.population:
            result = self._state.results.get(genome.id)
            summaries.append(
                GenomeSummary(
                    id=genome.id,
                    generation=genome.generation,
                    fitness=result.fitness if result else None,
                    elo_rating=self._state.elo_ratings.get(genome.id, initial),
                    games_played=result.games_played if result else 0,
                    wins=result.wins if result else 0,
                    hidden_layer_count=len(genome.hidden_layers),
                    parameter_count=genome.parameter_count,
                )
            )
        return summaries

    async def worker_statuses(self) -> list[WorkerStatusView]:
        views = []
        for worker in self._pool.workers:
            try:
                usage = await self._pool.usage(worker)
                cpu, memory = usage.cpu_percent, usage.memory_percent
            except (TransportError, OSError) as exc:
                logger.warning("worker_usage_unavailable", worker=worker.name, error=str(exc))
                cpu = memory = 0.0
            views.append(
                WorkerStatusView(
                    name=worker.name,
                    state=worker.state.value,
                    current_genome_id=worker.current_genome_id,
                    completed_evaluations=worker.completed_evaluations,
                    failed_evaluations=worker.failed_evaluations,
                    cpu_usage=cpu,
                    memory_usage=memory,
                )
            )
        return views

    def recent_activity(self, count: int = 50) -> list[ActivityEntry]:
        return self._observers.recent_activity(count)

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    async def _loop(self) -> None:
        state = self._state
        while True:
            if state.status is TrainingStatus.STOPPED:
                if not self._in_flight:
                    return
            elif self._reached_generation_limit() and not self._in_flight:
                state.transition(TrainingStatus.STOPPED)
                self._observers.activity(
                    ActivityLevel.INFO,
                    f"Reached generation limit {self._config.evolution.max_generations}",
                    generation=state.current_generation,
                )
                return
            elif state.status is TrainingStatus.RUNNING:
                if self._checkpoint_pending and not await self._flush_checkpoint():
                    continue
                if state.generation_complete and not self._in_flight:
                    await self._complete_generation()
                    continue
                self._dispatch_pending()
                if not self._in_flight and state.pending() and not self._pool.has_healthy_worker():
                    state.transition(TrainingStatus.PAUSED)
                    self._observers.activity(
                        ActivityLevel.ERROR,
                        "No healthy workers remain; training paused until a worker is re-provisioned",
                        generation=state.current_generation,
                    )
                    self._publish_snapshot()

            event = await self._next_event()
            if event is not None:
                await self._handle(event)

    async def _next_event(self) -> _Event | None:
        if self._drain_deadline is None:
            return await self._events.get()
        remaining = self._drain_deadline - asyncio.get_running_loop().time()
        try:
            return await asyncio.wait_for(self._events.get(), timeout=max(remaining, 0.0))
        except asyncio.TimeoutError:
            logger.warning("drain_timeout", cancelled=len(self._in_flight))
            await self._cancel_in_flight(graceful=True)
            self._drain_deadline = None
            return None

    async def _handle(self, event: _Event) -> None:
        if isinstance(event, _EvaluationDone):
            self._record_result(event)
        elif isinstance(event, _WorkerChanged):
            self._note_worker_change(event.event)
        else:
            await self._apply_command(event)

    def _reached_generation_limit(self) -> bool:
        limit = self._config.evolution.max_generations
        return limit is not None and self._state.current_generation >= limit

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _dispatch_pending(self) -> None:
        for genome in self._state.pending():
            if genome.id in self._in_flight:
                continue
            exclude = self._failed_slots.get(genome.id, set())
            if exclude and not self._pool.has_healthy_worker(exclude):
                exclude = set()
            handle = self._pool.acquire_idle_worker(exclude)
            if handle is None:
                if exclude:
                    continue
                return
            self._start_dispatch(genome, handle)

    def _start_dispatch(self, genome: NetworkGenome, handle: WorkerHandle) -> None:
        worker = self._pool.worker(handle)
        worker.begin_evaluation(genome.id)
        self._dispatch_attempts[genome.id] = self._dispatch_attempts.get(genome.id, 0) + 1
        request = EvaluationRequest(
            genome=genome,
            games_to_play=self._config.evaluation.games_per_evaluation,
            timeout_s=self._config.evaluation.deadline_s,
        )
        task = asyncio.create_task(self._evaluate(handle, request), name=f"evaluate-{genome.id}")
        self._in_flight[genome.id] = _Dispatch(task=task, handle=handle)
        logger.debug(
            "genome_dispatched",
            genome_id=genome.id,
            worker=handle.name,
            attempt=self._dispatch_attempts[genome.id],
        )

    async def _evaluate(self, handle: WorkerHandle, request: EvaluationRequest) -> None:
        worker = self._pool.worker(handle)
        genome_id = request.genome.id
        try:
            result = await self._communicator.evaluate(worker.name, request)
        except asyncio.CancelledError:
            worker.abort_evaluation(self._graceful_cancel, "evaluation cancelled")
            self._pool.release(handle)
            raise
        except Exception as exc:
            logger.exception("evaluation_crashed", worker=worker.name, genome_id=genome_id)
            result = EvaluationResult.failure(genome_id, None, f"{type(exc).__name__}: {exc}", worker.name)

        try:
            worker.complete_evaluation(result)
        except InvalidStateError as exc:
            logger.error("evaluation_state_error", worker=worker.name, genome_id=genome_id, error=str(exc))
            result = EvaluationResult.failure(genome_id, ErrorKind.INVALID_STATE, str(exc), worker.name)
        self._pool.release(handle)
        self._events.put_nowait(_EvaluationDone(genome_id, handle.slot_id, result))

    async def _cancel_in_flight(self, graceful: bool) -> None:
        self._graceful_cancel = graceful
        tasks = [dispatch.task for dispatch in self._in_flight.values()]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._in_flight.clear()
        self._graceful_cancel = True

    def _record_result(self, done: _EvaluationDone) -> None:
        state = self._state
        self._in_flight.pop(done.genome_id, None)
        if done.genome_id not in {g.id for g in state.population} or done.genome_id in state.results:
            logger.warning("stale_result_ignored", genome_id=done.genome_id)
            return

        result = done.result
        generation = state.current_generation
        if not result.failed:
            state.results[done.genome_id] = result.model_copy(update={"generation": generation})
            evolution = self._config.evolution
            state.elo_ratings[done.genome_id] = update_rating(
                state.elo_ratings.get(done.genome_id, evolution.initial_elo),
                evolution.opponent_elo,
                result.wins,
                result.games_played,
                evolution.elo_k_factor,
            )
            logger.info(
                "evaluation_recorded",
                genome_id=done.genome_id,
                worker=result.worker_name,
                fitness=result.fitness,
                games_played=result.games_played,
                wins=result.wins,
            )
            return

        self._failed_slots.setdefault(done.genome_id, set()).add(done.slot_id)
        attempts = self._dispatch_attempts.get(done.genome_id, 1)
        kind = result.error_kind.value if result.error_kind else "error"
        self._observers.activity(
            ActivityLevel.WARNING,
            f"Evaluation on {result.worker_name} failed ({kind}): {result.error_message}",
            generation=generation,
            genome_id=done.genome_id,
        )
        if attempts >= self._config.evaluation.max_dispatch_attempts:
            exhausted = ExhaustedRetriesError(f"{kind} after {attempts} dispatches: {result.error_message}")
            state.results[done.genome_id] = result.model_copy(
                update={
                    "fitness": self._config.evaluation.minimum_fitness,
                    "generation": generation,
                    "error_kind": exhausted.kind,
                    "error_message": str(exhausted),
                }
            )
            self._observers.activity(
                ActivityLevel.ERROR,
                f"Genome failed on {attempts} dispatches; scored with minimum fitness",
                generation=generation,
                genome_id=done.genome_id,
            )

    def _note_worker_change(self, event: WorkerStatusEvent) -> None:
        if event.state is WorkerState.OFFLINE:
            self._observers.activity(
                ActivityLevel.ERROR,
                f"{event.name} is offline after {event.consecutive_failures} consecutive failures",
                generation=self._state.current_generation,
            )
        elif event.state is WorkerState.IDLE and event.previous is WorkerState.STARTING:
            self._observers.activity(ActivityLevel.INFO, f"{event.name} is ready")

    def _on_worker_event(self, event: WorkerStatusEvent) -> None:
        self._observers.publish_worker_status(event)
        self._events.put_nowait(_WorkerChanged(event))

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def _apply_command(self, command: Command) -> None:
        state = self._state
        try:
            if command.kind is CommandKind.PAUSE:
                if state.status is TrainingStatus.RUNNING:
                    state.transition(TrainingStatus.PAUSED)
                    self._observers.activity(
                        ActivityLevel.INFO,
                        f"Training paused ({len(self._in_flight)} evaluations still running)",
                        generation=state.current_generation,
                    )
                elif state.status is not TrainingStatus.PAUSED:
                    raise InvalidStateError(f"cannot pause while {state.status.value}")
                command.resolve()
            elif command.kind is CommandKind.RESUME:
                if state.status is TrainingStatus.PAUSED:
                    state.transition(TrainingStatus.RUNNING)
                    self._observers.activity(
                        ActivityLevel.INFO, "Training resumed", generation=state.current_generation
                    )
                elif state.status is not TrainingStatus.RUNNING:
                    raise InvalidStateError(f"cannot resume while {state.status.value}")
                command.resolve()
            elif command.kind is CommandKind.SAVE_CHECKPOINT:
                try:
                    path = await self._write_checkpoint()
                except CheckpointError:
                    self._checkpoint_pending = True
                    raise
                command.resolve(path)
            elif command.kind is CommandKind.STOP:
                if state.status is not TrainingStatus.STOPPED:
                    state.transition(TrainingStatus.STOPPED)
                    self._observers.activity(
                        ActivityLevel.INFO,
                        f"Stopping: waiting for {len(self._in_flight)} evaluations",
                        generation=state.current_generation,
                    )
                if command.drain_timeout_s is not None:
                    self._drain_deadline = asyncio.get_running_loop().time() + command.drain_timeout_s
                self._stop_commands.append(command)
            self._publish_snapshot()
        except (InvalidStateError, CheckpointError) as exc:
            if isinstance(exc, CheckpointError):
                self._observers.activity(
                    ActivityLevel.ERROR, f"Checkpoint failed: {exc}", generation=state.current_generation
                )
            command.fail(exc)

    def _fail_waiting_commands(self) -> None:
        while not self._events.empty():
            event = self._events.get_nowait()
            if isinstance(event, Command):
                event.fail(InvalidStateError("control loop exited"))
        for command in self._stop_commands:
            command.resolve()
        self._stop_commands.clear()

    # ------------------------------------------------------------------
    # Generation boundary
    # ------------------------------------------------------------------

    async def _complete_generation(self) -> None:
        state = self._state
        loop = asyncio.get_running_loop()
        generation = state.current_generation
        population = list(state.population)
        results = [state.results[g.id] for g in population]
        previous_best = state.history[-1].best_fitness if state.history else None

        offspring = self._breeder.breed(
            population,
            state.results,
            generation + 1,
            self._rng,
            failure_fitness=self._config.evaluation.minimum_fitness,
        )
        record = summarize_generation(
            generation,
            state.current_stage,
            results,
            elite_count=len(offspring.elite_ids),
            duration_s=loop.time() - self._generation_started,
            previous_best=previous_best,
        )

        state.history.append(record)
        state.total_games_played += record.games_played
        state.total_wins += sum(r.wins for r in results if r.generation in (None, generation))
        self._track_best(record)

        if self._archive is not None:
            await self._archive_call(self._archive.record_generation(record, results))

        survivors = {g.id for g in offspring.population}
        state.elo_ratings = {gid: rating for gid, rating in state.elo_ratings.items() if gid in survivors}
        state.population = offspring.population
        state.results = dict(offspring.carried_results)
        state.current_generation = generation + 1
        self._dispatch_attempts.clear()
        self._failed_slots.clear()
        self._generation_started = loop.time()

        logger.info(
            "generation_complete",
            generation=generation,
            best_fitness=record.best_fitness,
            average_fitness=record.average_fitness,
            worst_fitness=record.worst_fitness,
            games_played=record.games_played,
            failed=record.failed_count,
            duration_s=round(record.duration_s, 3),
        )

        if (generation + 1) % self._config.checkpoint.interval == 0:
            self._checkpoint_pending = True
            await self._flush_checkpoint()

        self._observers.publish_generation(record)
        self._observers.activity(
            ActivityLevel.INFO,
            f"Generation {generation} complete: best={record.best_fitness:.4f} "
            f"avg={record.average_fitness:.4f} worst={record.worst_fitness:.4f}",
            generation=generation,
        )
        self._publish_snapshot()

    def _track_best(self, record: GenerationRecord) -> None:
        state = self._state
        if record.best_genome_id is not None and (
            state.best_fitness is None or record.best_fitness > state.best_fitness
        ):
            state.best_fitness = record.best_fitness
            state.best_genome_id = record.best_genome_id
            state.generations_since_improvement = 0
            self._observers.activity(
                ActivityLevel.SUCCESS,
                f"New best fitness {record.best_fitness:.4f}",
                generation=record.generation,
                genome_id=record.best_genome_id,
            )
        else:
            state.generations_since_improvement += 1

    # ------------------------------------------------------------------
    # Checkpoints and shutdown
    # ------------------------------------------------------------------

    async def _write_checkpoint(self) -> Path:
        checkpoint = Checkpoint.from_state(self._state, rng_state=self._rng.bit_generator.state)
        return await self._checkpoints.save(checkpoint)

    async def _flush_checkpoint(self) -> bool:
        """Write the pending checkpoint; pause training if it keeps failing."""
        try:
            await self._write_checkpoint()
        except CheckpointError as exc:
            if self._state.status is TrainingStatus.RUNNING:
                self._state.transition(TrainingStatus.PAUSED)
            self._observers.activity(
                ActivityLevel.ERROR,
                f"Checkpoint failed, generation advancement halted: {exc}",
                generation=self._state.current_generation,
            )
            self._publish_snapshot()
            return False
        self._checkpoint_pending = False
        return True

    async def _shutdown(self) -> None:
        while not self._events.empty():
            await self._handle(self._events.get_nowait())
        await self._flush_checkpoint()
        await self._pool.shutdown()
        if self._archive is not None:
            await self._archive_call(self._archive.finish_run())
        self._observers.activity(
            ActivityLevel.INFO,
            f"Training stopped at generation {self._state.current_generation}",
            generation=self._state.current_generation,
        )
        self._publish_snapshot()
        logger.info(
            "training_stopped",
            generation=self._state.current_generation,
            total_games=self._state.total_games_played,
            best_fitness=self._state.best_fitness,
        )

    async def _archive_call(self, call: Awaitable[None]) -> None:
        try:
            await call
        except ArchiveError as exc:
            self._observers.activity(
                ActivityLevel.WARNING,
                f"Generation archive unavailable: {exc}",
                generation=self._state.current_generation,
            )

    async def _report_status(self) -> None:
        while True:
            await asyncio.sleep(self._config.status_report_interval_s)
            health = self._pool.health_snapshot()
            logger.info(
                "pool_status",
                status=self._state.status.value,
                generation=self._state.current_generation,
                pending=len(self._state.pending()),
                in_flight=len(self._in_flight),
                **health.as_dict(),
            )

    def _publish_snapshot(self) -> None:
        self._observers.publish_snapshot(self.snapshot())
