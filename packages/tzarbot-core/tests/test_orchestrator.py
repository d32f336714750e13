"""End-to-end tests for the orchestrator control loop.

Workers, VMs and games are replaced by FakeControlPlane and ScriptedChannel;
the pool, communicator, breeder, checkpoint store and control loop all run
for real.
"""

from __future__ import annotations

import asyncio

import numpy as np
import pytest
from _helpers import SCORE_FITNESS, FakeControlPlane, ScriptedChannel, make_config, make_genome, wait_until

from tzarbot.communication.wire import EvaluationResult
from tzarbot.errors import ErrorKind, InvalidStateError
from tzarbot.persistence import DatabaseManager, GenerationArchive
from tzarbot.training.checkpoint import Checkpoint, CheckpointStore
from tzarbot.training.orchestrator import OrchestratorService
from tzarbot.training.state import ActivityLevel, TrainingState, TrainingStatus
from tzarbot.workers import WorkerState

WORKER_0 = "TzarBot-Worker-0"
WORKER_1 = "TzarBot-Worker-1"


def _service(config, channel, control_plane=None, population=None, **kwargs):
    service = OrchestratorService.create(
        config, control_plane or FakeControlPlane(), channel, fitness=SCORE_FITNESS, **kwargs
    )
    if population is not None:
        service.state.population = list(population)
    return service


def _errors(service):
    return [e.message for e in service.recent_activity(100) if e.level is ActivityLevel.ERROR]


async def _run_until_blocked(service, channel, in_flight):
    channel.gate = asyncio.Event()
    task = asyncio.create_task(service.run())
    await wait_until(lambda: len(channel.requests) == in_flight)
    return task


# ---------------------------------------------------------------------------
# Generation scenarios
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_generation_statistics_and_elite_carry_over(tmp_path):
    config = make_config(tmp_path, pool_capacity=2, population_size=4, elite_count=1, max_generations=1)
    population = [make_genome(seed=i) for i in range(4)]
    channel = ScriptedChannel({g.id: f for g, f in zip(population, [0.1, 0.9, 0.4, 0.2])})
    service = _service(config, channel, population=population)
    published = []
    service.observers.on_generation(published.append)

    state = await asyncio.wait_for(service.run(), 10)

    record = state.history[0]
    assert record.best_fitness == pytest.approx(0.9)
    assert record.worst_fitness == pytest.approx(0.1)
    assert record.average_fitness == pytest.approx(0.4)
    assert record.elite_count == 1
    assert record.best_genome_id == population[1].id
    assert record.games_played == 12
    assert published == [record]

    assert state.status is TrainingStatus.STOPPED
    assert state.current_generation == 1
    elite = state.population[0]
    assert elite.id == population[1].id
    np.testing.assert_array_equal(elite.weights, population[1].weights)
    assert state.results[elite.id].fitness == pytest.approx(0.9)
    assert all(g.generation == 1 for g in state.population[1:])

    evaluated = [genome_id for _, genome_id in channel.evaluations]
    assert sorted(evaluated) == sorted(g.id for g in population)
    assert {worker for worker, _ in channel.evaluations} == {WORKER_0, WORKER_1}
    assert config.checkpoint.path.exists()


@pytest.mark.asyncio
async def test_failing_worker_goes_offline_and_genomes_are_redispatched(tmp_path):
    config = make_config(tmp_path, pool_capacity=2, population_size=6, max_generations=1, max_consecutive_failures=3)
    channel = ScriptedChannel(default_fitness=0.5)
    channel.unreachable.add(WORKER_0)
    channel.delays[WORKER_1] = 0.05
    service = _service(config, channel)

    state = await asyncio.wait_for(service.run(), 10)

    worker = service.pool.by_name(WORKER_0)
    assert worker.state is WorkerState.OFFLINE
    assert worker.failed_evaluations == 3
    assert state.history[0].failed_count == 0
    assert len(channel.evaluations) == 6
    assert {w for w, _ in channel.evaluations} == {WORKER_1}
    assert any("offline" in message for message in _errors(service))


@pytest.mark.asyncio
async def test_genome_failing_everywhere_is_scored_as_failed(tmp_path):
    config = make_config(tmp_path, pool_capacity=3, population_size=3, max_generations=1, max_consecutive_failures=5)
    population = [make_genome(seed=i) for i in range(3)]
    channel = ScriptedChannel({population[0].id: 0.8})
    channel.broken_genomes.add(population[2].id)

    async with DatabaseManager(tmp_path / "archive.db") as db:
        archive = GenerationArchive(db, run_id="run-1")
        service = _service(config, channel, population=population, archive=archive)
        state = await asyncio.wait_for(service.run(), 10)
        [failed] = await archive.evaluations(population[2].id)

    assert failed["failed"]
    assert failed["error_kind"] == ErrorKind.EXHAUSTED_RETRIES.value
    assert failed["fitness"] == config.evaluation.minimum_fitness

    record = state.history[0]
    assert record.failed_count == 1
    assert record.worst_fitness == pytest.approx(0.5)
    tried_on = [worker for worker, genome_id in channel.requests if genome_id == population[2].id]
    assert len(tried_on) == config.evaluation.max_dispatch_attempts
    assert len(set(tried_on)) == 3
    assert state.population[0].id == population[0].id
    assert any("minimum fitness" in message for message in _errors(service))


@pytest.mark.asyncio
async def test_no_healthy_workers_pauses_until_reprovisioned(tmp_path):
    config = make_config(tmp_path, pool_capacity=1, population_size=2, max_generations=1, max_consecutive_failures=1)
    channel = ScriptedChannel()
    channel.unreachable.add(WORKER_0)
    service = _service(config, channel)

    task = asyncio.create_task(service.run())
    await wait_until(lambda: service.state.status is TrainingStatus.PAUSED)
    assert service.pool.by_name(WORKER_0).state is WorkerState.OFFLINE
    assert any("No healthy workers" in message for message in _errors(service))

    channel.unreachable.clear()
    assert await service.pool.reprovision(WORKER_0)
    await service.resume()
    state = await asyncio.wait_for(task, 10)

    assert state.history[0].failed_count == 0
    assert len(channel.evaluations) == 2


# ---------------------------------------------------------------------------
# Resume
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_resume_does_not_reevaluate_elites(tmp_path):
    channel = ScriptedChannel(default_fitness=0.3)
    first = _service(make_config(tmp_path, max_generations=1), channel)
    await asyncio.wait_for(first.run(), 10)
    elite_id = first.state.population[0].id

    channel = ScriptedChannel(default_fitness=0.3)
    second = _service(make_config(tmp_path, max_generations=2), channel)
    assert await second.restore()
    assert second.state.current_generation == 1
    assert elite_id in second.state.results
    assert [r.generation for r in second.observers.generation_feed()] == [0]

    state = await asyncio.wait_for(second.run(), 10)

    assert len(channel.evaluations) == 3
    assert elite_id not in {genome_id for _, genome_id in channel.evaluations}
    assert [r.generation for r in state.history] == [0, 1]
    assert state.history[1].games_played == 9


@pytest.mark.asyncio
async def test_resume_mid_generation_evaluates_only_pending(tmp_path):
    config = make_config(tmp_path, max_generations=1)
    population = [make_genome(seed=i) for i in range(4)]
    saved = TrainingState(population=population)
    for genome in population[:2]:
        saved.results[genome.id] = EvaluationResult(
            genome_id=genome.id, fitness=0.7, games_played=3, wins=3, generation=0
        )
    await CheckpointStore(config.checkpoint).save(Checkpoint.from_state(saved))

    channel = ScriptedChannel(default_fitness=0.5)
    service = _service(config, channel)
    assert await service.restore()
    state = await asyncio.wait_for(service.run(), 10)

    assert sorted(g for _, g in channel.evaluations) == sorted(g.id for g in population[2:])
    assert state.history[0].best_fitness == pytest.approx(0.7)


@pytest.mark.asyncio
async def test_restore_without_checkpoint(tmp_path):
    service = _service(make_config(tmp_path), ScriptedChannel())
    assert not await service.restore()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_pause_lets_in_flight_finish_and_resume_continues(tmp_path):
    config = make_config(tmp_path, pool_capacity=2, population_size=4, max_generations=1)
    channel = ScriptedChannel()
    service = _service(config, channel)
    task = await _run_until_blocked(service, channel, in_flight=2)

    await service.pause()
    assert service.snapshot().status is TrainingStatus.PAUSED
    channel.gate.set()
    await wait_until(lambda: len(service.state.results) == 2)
    await asyncio.sleep(0.05)
    assert len(channel.requests) == 2

    await service.resume()
    state = await asyncio.wait_for(task, 10)

    assert len(channel.evaluations) == 4
    assert state.history[0].evaluated_count == 4


@pytest.mark.asyncio
async def test_save_checkpoint_mid_generation(tmp_path):
    config = make_config(tmp_path, max_generations=1)
    channel = ScriptedChannel()
    service = _service(config, channel)
    task = await _run_until_blocked(service, channel, in_flight=2)

    path = await service.save_checkpoint()
    checkpoint = await CheckpointStore(config.checkpoint).load()
    assert path == config.checkpoint.path
    assert checkpoint.current_generation == 0
    assert len(checkpoint.population) == 4
    assert checkpoint.results == []

    channel.gate.set()
    await asyncio.wait_for(task, 10)


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_evaluations(tmp_path):
    config = make_config(tmp_path, max_generations=3)
    channel = ScriptedChannel()
    service = _service(config, channel)
    task = await _run_until_blocked(service, channel, in_flight=2)

    stopping = asyncio.create_task(service.stop())
    await asyncio.sleep(0.05)
    assert not stopping.done()
    assert service.state.status is TrainingStatus.STOPPED

    channel.gate.set()
    await asyncio.wait_for(stopping, 10)
    state = await task

    assert len(state.results) == 2
    assert len(channel.requests) == 2
    assert all(w.state is WorkerState.IDLE for w in service.pool.workers)
    checkpoint = await CheckpointStore(config.checkpoint).load()
    assert len(checkpoint.results) == 2


@pytest.mark.asyncio
async def test_stop_with_drain_timeout_cancels_gracefully(tmp_path):
    config = make_config(tmp_path, max_generations=3)
    channel = ScriptedChannel()
    service = _service(config, channel)
    task = await _run_until_blocked(service, channel, in_flight=2)

    await asyncio.wait_for(service.stop(drain_timeout_s=0.05), 10)
    state = await task

    assert state.results == {}
    assert state.status is TrainingStatus.STOPPED
    for worker in service.pool.workers:
        assert worker.state is WorkerState.IDLE
        assert worker.failed_evaluations == 0


@pytest.mark.asyncio
async def test_commands_require_running_loop(tmp_path):
    service = _service(make_config(tmp_path), ScriptedChannel())
    with pytest.raises(InvalidStateError):
        await service.pause()
    with pytest.raises(InvalidStateError):
        await service.save_checkpoint()

    await service.stop()
    assert service.state.status is TrainingStatus.STOPPED
    with pytest.raises(InvalidStateError):
        await service.run()


@pytest.mark.asyncio
async def test_checkpoint_failure_halts_advancement(tmp_path):
    blocker = tmp_path / "blocked"
    blocker.write_text("not a directory")
    config = make_config(tmp_path, max_generations=2, checkpoint_path=blocker / "checkpoint.json")
    channel = ScriptedChannel()
    service = _service(config, channel)

    task = asyncio.create_task(service.run())
    await wait_until(lambda: service.state.status is TrainingStatus.PAUSED)
    assert service.state.current_generation == 1
    assert len(channel.evaluations) == 4
    assert any("Checkpoint failed" in message for message in _errors(service))

    blocker.unlink()
    await service.resume()
    state = await asyncio.wait_for(task, 10)

    assert state.current_generation == 2
    assert config.checkpoint.path.exists()


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_snapshot_and_population_views(tmp_path):
    config = make_config(tmp_path, max_generations=1)
    population = [make_genome(seed=i) for i in range(4)]
    channel = ScriptedChannel({g.id: f for g, f in zip(population, [0.1, 0.9, 0.4, 0.2])})
    service = _service(config, channel, population=population)
    snapshots = []
    service.observers.on_snapshot(snapshots.append)

    await asyncio.wait_for(service.run(), 10)

    snapshot = service.snapshot()
    assert snapshot.status is TrainingStatus.STOPPED
    assert snapshot.current_generation == 1
    assert snapshot.population_size == 4
    assert snapshot.total_games_played == 12
    assert snapshot.best_fitness == pytest.approx(0.9)
    assert snapshot.win_rate == pytest.approx(3 / 12)
    assert snapshots[-1].status is TrainingStatus.STOPPED

    summaries = {s.id: s for s in service.population_summaries()}
    elite = summaries[population[1].id]
    assert elite.fitness == pytest.approx(0.9)
    assert elite.elo_rating == pytest.approx(1048.0)
    assert elite.win_rate == 1.0
    others = [s for s in summaries.values() if s.id != population[1].id]
    assert all(s.fitness is None and s.elo_rating == 1000.0 for s in others)

    statuses = await service.worker_statuses()
    assert [s.name for s in statuses] == ["TzarBot-Worker-0", "TzarBot-Worker-1"]
    assert sum(s.completed_evaluations for s in statuses) == 4
    assert statuses[0].cpu_usage == 12.5
    assert len(service.history()) == 1


# ---------------------------------------------------------------------------
# Worker exclusivity and cancellation
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_no_two_workers_evaluate_the_same_genome(tmp_path):
    config = make_config(
        tmp_path, pool_capacity=3, population_size=8, max_generations=2, max_consecutive_failures=10
    )
    population = [make_genome(seed=i) for i in range(8)]
    channel = ScriptedChannel(default_fitness=0.4)
    channel.unreachable.add(WORKER_0)
    channel.broken_genomes.add(population[3].id)
    channel.corrupt_responses["TzarBot-Worker-2"] = 2
    channel.delays[WORKER_1] = 0.01
    service = _service(config, channel, population=population)
    overlaps = []

    def check_exclusive(event):
        busy = [w.current_genome_id for w in service.pool.workers if w.current_genome_id is not None]
        if len(busy) != len(set(busy)):
            overlaps.append((event.name, event.state, busy))

    service.pool.add_listener(check_exclusive)

    state = await asyncio.wait_for(service.run(), 10)

    assert overlaps == []
    assert state.current_generation == 2
    assert state.history[0].failed_count >= 1
    assert all(w.current_genome_id is None for w in service.pool.workers)


@pytest.mark.asyncio
async def test_cancelled_run_stops_worker_recovery(tmp_path):
    config = make_config(tmp_path, pool_capacity=1, population_size=2, max_generations=1)
    config.workers.recovery_delay_s = 5.0
    channel = ScriptedChannel()
    service = _service(config, channel)
    task = await _run_until_blocked(service, channel, in_flight=1)

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0.05)

    worker = service.pool.by_name(WORKER_0)
    assert worker.state is WorkerState.ERROR
    assert worker.current_genome_id is None
    assert not [t for t in asyncio.all_tasks() if t.get_name().startswith("recover-") and not t.done()]
