"""Tests for checkpoint encoding and the CheckpointStore."""

import numpy as np
import pytest
from _helpers import make_genome

from tzarbot.communication.wire import EvaluationResult
from tzarbot.config import CheckpointConfig, RetryPolicy
from tzarbot.errors import CheckpointError, CorruptPayloadError
from tzarbot.evolution.statistics import GenerationRecord
from tzarbot.training.checkpoint import Checkpoint, CheckpointStore
from tzarbot.training.state import TrainingState, TrainingStatus


def _state():
    population = [make_genome(seed=i) for i in range(3)]
    state = TrainingState(current_generation=4, population=population, status=TrainingStatus.RUNNING)
    state.results[population[0].id] = EvaluationResult(
        genome_id=population[0].id, fitness=0.8, games_played=3, wins=2, generation=4
    )
    state.history.append(GenerationRecord(generation=3, stage="Bootstrap", best_fitness=0.8))
    state.best_fitness = 0.8
    state.best_genome_id = population[0].id
    state.total_games_played = 30
    state.elo_ratings[population[0].id] = 1016.0
    return state


def _store(tmp_path, **kwargs):
    return CheckpointStore(
        CheckpointConfig(path=tmp_path / "ckpt" / "checkpoint.json", retry=RetryPolicy(max_attempts=2, base_delay_s=0.0), **kwargs)
    )


def test_checkpoint_restores_state():
    state = _state()
    restored = Checkpoint.decode(Checkpoint.from_state(state).encode()).to_state()

    assert restored.status is TrainingStatus.IDLE
    assert restored.current_generation == 4
    assert [g.id for g in restored.population] == [g.id for g in state.population]
    np.testing.assert_array_equal(restored.population[1].weights, state.population[1].weights)
    assert set(restored.results) == {state.population[0].id}
    assert restored.pending() == state.population[1:]
    assert restored.history[0].best_fitness == pytest.approx(0.8)
    assert restored.elo_ratings == state.elo_ratings
    assert restored.total_games_played == 30


def test_rng_state_survives_encoding():
    rng = np.random.default_rng(9)
    checkpoint = Checkpoint.decode(Checkpoint.from_state(_state(), rng_state=rng.bit_generator.state).encode())

    restored = np.random.default_rng()
    restored.bit_generator.state = checkpoint.rng_state
    assert restored.random() == rng.random()


def test_tampered_checkpoint_is_corrupt():
    payload = Checkpoint.from_state(_state()).encode()
    with pytest.raises(CorruptPayloadError):
        Checkpoint.decode(payload.replace(b'"current_generation":4', b'"current_generation":5'))


@pytest.mark.asyncio
async def test_save_and_load(tmp_path):
    store = _store(tmp_path)
    assert await store.load() is None
    assert not store.exists()

    path = await store.save(Checkpoint.from_state(_state()))
    assert path.exists()
    assert not path.with_name(f"{path.name}.tmp").exists()

    loaded = await store.load()
    assert loaded.current_generation == 4


@pytest.mark.asyncio
async def test_save_overwrites_previous(tmp_path):
    store = _store(tmp_path)
    state = _state()
    await store.save(Checkpoint.from_state(state))
    state.current_generation = 5
    await store.save(Checkpoint.from_state(state))
    assert (await store.load()).current_generation == 5


@pytest.mark.asyncio
async def test_corrupt_file_raises_checkpoint_error(tmp_path):
    store = _store(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_bytes(b"{not json")
    with pytest.raises(CheckpointError):
        await store.load()


@pytest.mark.asyncio
async def test_persistent_write_failure_raises(tmp_path):
    blocker = tmp_path / "ckpt"
    blocker.write_text("a file where the directory should be")
    with pytest.raises(CheckpointError):
        await _store(tmp_path).save(Checkpoint.from_state(_state()))
