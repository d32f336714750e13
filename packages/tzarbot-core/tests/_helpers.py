"""Shared test helpers - importable from test modules."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import numpy as np

from tzarbot.communication.wire import GameOutcome, WorkerReport, decode_request, encode_report
from tzarbot.config import (
    CheckpointConfig,
    EvaluationConfig,
    EvolutionConfig,
    NetworkConfig,
    OrchestratorConfig,
    RetryPolicy,
    WorkerConfig,
)
from tzarbot.errors import ProvisionFailureError, TransportError
from tzarbot.genome.codec import deserialize
from tzarbot.genome.model import NetworkGenome, NetworkLayout
from tzarbot.workers.control_plane import ResourceUsage

LAYOUT = NetworkLayout(input_size=8, mouse_head_size=2, action_head_size=3)
SMALL_NETWORK = NetworkConfig(
    input_size=8,
    hidden_layers=[4],
    mouse_head_size=2,
    action_head_size=3,
    min_neurons=1,
    max_neurons=16,
)


def make_genome(hidden: tuple[int, ...] = (4,), seed: int | None = None, generation: int = 0) -> NetworkGenome:
    return NetworkGenome.create_random(hidden, np.random.default_rng(seed), LAYOUT, generation=generation)


def make_config(
    tmp_path: Path,
    pool_capacity: int = 2,
    population_size: int = 4,
    elite_count: int = 1,
    max_generations: int | None = 1,
    games: int = 3,
    max_consecutive_failures: int = 3,
    retry_attempts: int = 1,
    deadline_s: float = 5.0,
    checkpoint_path: Path | None = None,
) -> OrchestratorConfig:
    return OrchestratorConfig(
        workers=WorkerConfig(
            pool_capacity=pool_capacity,
            provision_timeout_s=1.0,
            ready_poll_interval_s=0.01,
            max_consecutive_failures=max_consecutive_failures,
            recovery_delay_s=0.0,
        ),
        evaluation=EvaluationConfig(
            games_per_evaluation=games,
            deadline_s=deadline_s,
            retry=RetryPolicy(max_attempts=retry_attempts, base_delay_s=0.0),
        ),
        network=SMALL_NETWORK,
        evolution=EvolutionConfig(
            population_size=population_size,
            elite_count=elite_count,
            seed=7,
            max_generations=max_generations,
        ),
        checkpoint=CheckpointConfig(
            path=checkpoint_path or tmp_path / "checkpoint.json",
            retry=RetryPolicy(max_attempts=2, base_delay_s=0.0),
        ),
        status_report_interval_s=60.0,
    )


class FakeControlPlane:
    """Records calls; VMs are ready as soon as ``ready`` says so."""

    def __init__(self, ready: bool = True, broken: set[str] | None = None) -> None:
        self.ready = ready
        self.broken = set(broken or ())
        self.calls: list[tuple[str, str]] = []

    async def start(self, name: str) -> None:
        self.calls.append(("start", name))
        if name in self.broken:
            raise ProvisionFailureError(f"{name} is broken")

    async def stop(self, name: str) -> None:
        self.calls.append(("stop", name))

    async def reset(self, name: str) -> None:
        self.calls.append(("reset", name))
        if name in self.broken:
            raise ProvisionFailureError(f"{name} is broken")

    async def is_ready(self, name: str) -> bool:
        return self.ready

    async def usage(self, name: str) -> ResourceUsage:
        return ResourceUsage(cpu_percent=12.5, memory_percent=40.0)

    def count(self, action: str, name: str) -> int:
        return self.calls.count((action, name))


class ReportedScore:
    """Fitness calculator that takes each game's reported score as its fitness."""

    def calculate(self, game: GameOutcome) -> float:
        return game.game_score or 0.0


SCORE_FITNESS = ReportedScore()


class ScriptedChannel:
    """Worker side of the exchange, scored from a fitness table.

    Every game of a genome reports its table fitness (``default_fitness``
    when absent) as the game score and is won when that fitness is at
    least 0.5. Pair it with ``SCORE_FITNESS`` to get the table back as fitness.
    """

    def __init__(
        self,
        fitness: dict[str, float] | None = None,
        default_fitness: float = 0.5,
        scorer: Callable[[NetworkGenome], float] | None = None,
    ) -> None:
        self.fitness = dict(fitness or {})
        self.default_fitness = default_fitness
        self.scorer = scorer
        self.unreachable: set[str] = set()
        self.broken_genomes: set[str] = set()
        self.corrupt_responses: dict[str, int] = {}
        self.delays: dict[str, float] = {}
        self.games_played: int | None = None
        self.gate: asyncio.Event | None = None
        self.pushed: dict[str, tuple[NetworkGenome, str]] = {}
        self.requests: list[tuple[str, str]] = []
        self.evaluations: list[tuple[str, str]] = []
        self.transport_attempts = 0

    def score(self, genome: NetworkGenome) -> float:
        if genome.id in self.fitness:
            return self.fitness[genome.id]
        if self.scorer is not None:
            return self.scorer(genome)
        return self.default_fitness

    async def push_genome(self, worker_name: str, payload: bytes, checksum: str) -> None:
        if worker_name in self.unreachable:
            self.transport_attempts += 1
            raise TransportError(f"{worker_name} unreachable")
        self.pushed[worker_name] = (deserialize(payload), checksum)

    async def request_evaluation(self, worker_name: str, request: bytes) -> bytes:
        envelope = decode_request(request)
        genome, checksum = self.pushed[worker_name]
        self.requests.append((worker_name, genome.id))
        if genome.id in self.broken_genomes:
            raise TransportError(f"{worker_name} lost the game session for {genome.id}")
        if worker_name in self.delays:
            await asyncio.sleep(self.delays[worker_name])
        if self.gate is not None:
            await self.gate.wait()

        score = self.score(genome)
        played = envelope.games_to_play if self.games_played is None else self.games_played
        report = WorkerReport(
            request_id=envelope.request_id,
            genome_id=genome.id,
            genome_checksum=checksum,
            games=[GameOutcome(won=score >= 0.5, game_score=score) for _ in range(played)],
            stopped_early=played < envelope.games_to_play,
        )
        if self.corrupt_responses.get(worker_name, 0) > 0:
            self.corrupt_responses[worker_name] -= 1
            return b'{"checksum": "0000", "body": {}}'
        self.evaluations.append((worker_name, genome.id))
        return encode_report(report)


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll ``predicate`` on the event loop until it holds."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)
