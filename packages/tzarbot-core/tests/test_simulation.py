"""Tests for the simulated control plane and channel."""

import pytest
from _helpers import make_genome

from tzarbot.communication import Communicator, EvaluationRequest
from tzarbot.config import RetryPolicy
from tzarbot.errors import ErrorKind
from tzarbot.simulation import FaultRates, SimulatedChannel, SimulatedControlPlane, genome_skill


@pytest.mark.asyncio
async def test_control_plane_boot_and_reset():
    plane = SimulatedControlPlane()
    assert not await plane.is_ready("vm")
    await plane.start("vm")
    assert await plane.is_ready("vm")
    await plane.reset("vm")
    assert plane.resets("vm") == 1
    assert 0.0 <= (await plane.usage("vm")).cpu_percent <= 100.0
    await plane.stop("vm")
    assert not await plane.is_ready("vm")


@pytest.mark.asyncio
async def test_simulated_evaluation_is_deterministic_per_seed():
    genome = make_genome(seed=3)

    async def evaluate(seed):
        channel = SimulatedChannel(seed=seed)
        request = EvaluationRequest(genome=genome, games_to_play=5, timeout_s=5.0)
        return await Communicator(channel, RetryPolicy(base_delay_s=0.0)).evaluate("w0", request)

    first, second = await evaluate(11), await evaluate(11)
    assert not first.failed
    assert first.games_played == 5
    assert first.fitness == pytest.approx(second.fitness)
    assert first.wins == second.wins


@pytest.mark.asyncio
async def test_simulated_faults_surface_as_failures():
    channel = SimulatedChannel(seed=1, faults=FaultRates(unreachable=1.0))
    request = EvaluationRequest(genome=make_genome(seed=1), games_to_play=2, timeout_s=5.0)
    result = await Communicator(channel, RetryPolicy(max_attempts=2, base_delay_s=0.0)).evaluate("w0", request)
    assert result.error_kind is ErrorKind.UNREACHABLE

    channel = SimulatedChannel(seed=1, faults=FaultRates(corrupt=1.0))
    result = await Communicator(channel, RetryPolicy(base_delay_s=0.0)).evaluate("w0", request)
    assert result.error_kind is ErrorKind.CORRUPT


def test_skill_rises_with_mean_weight():
    genome = make_genome(seed=2)
    shifted = genome.derive(genome.weights + 0.1, 1, [genome.id])
    assert 0.0 <= genome_skill(genome) <= 1.0
    assert genome_skill(shifted) > genome_skill(genome)
