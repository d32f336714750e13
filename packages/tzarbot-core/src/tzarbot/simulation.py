"""In-process stand-ins for the hypervisor and the worker channel.

They let the orchestrator run end to end without VMs: the control plane
boots instantly (or after a delay), and each "game" is a coin flip whose
odds rise with the genome's mean weight, so evolution has a gradient to
climb. Fault rates inject the transport and integrity failures the real
system has to survive.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import numpy as np
import structlog

from tzarbot.communication.wire import GameOutcome, WorkerReport, decode_request, encode_report
from tzarbot.errors import CorruptPayloadError, ProvisionFailureError, TransportError
from tzarbot.genome.codec import deserialize, payload_checksum
from tzarbot.genome.model import NetworkGenome
from tzarbot.workers.control_plane import ResourceUsage

logger = structlog.get_logger()


@dataclass
class _VM:
    running: bool = False
    ready_at: float = 0.0
    resets: int = 0


class SimulatedControlPlane:
    """VMControlPlane whose machines become ready ``boot_delay_s`` after start."""

    def __init__(
        self,
        boot_delay_s: float = 0.0,
        broken: set[str] | None = None,
        seed: int | None = None,
    ) -> None:
        self.boot_delay_s = boot_delay_s
        self.broken = set(broken or ())
        self._vms: dict[str, _VM] = {}
        self._rng = np.random.default_rng(seed)

    def _vm(self, name: str) -> _VM:
        return self._vms.setdefault(name, _VM())

    async def start(self, name: str) -> None:
        if name in self.broken:
            raise ProvisionFailureError(f"{name} failed to boot")
        vm = self._vm(name)
        vm.running = True
        vm.ready_at = asyncio.get_running_loop().time() + self.boot_delay_s

    async def stop(self, name: str) -> None:
        self._vm(name).running = False

    async def reset(self, name: str) -> None:
        self._vm(name).resets += 1
        await self.start(name)

    async def is_ready(self, name: str) -> bool:
        vm = self._vm(name)
        return vm.running and asyncio.get_running_loop().time() >= vm.ready_at

    async def usage(self, name: str) -> ResourceUsage:
        if not self._vm(name).running:
            return ResourceUsage()
        cpu, memory = self._rng.uniform(5.0, 95.0, size=2)
        return ResourceUsage(cpu_percent=float(cpu), memory_percent=float(memory))

    def resets(self, name: str) -> int:
        return self._vm(name).resets


@dataclass
class FaultRates:
    """Per-call probabilities of injected faults."""

    unreachable: float = 0.0
    corrupt: float = 0.0
    partial: float = 0.0


def genome_skill(genome: NetworkGenome, sharpness: float = 50.0) -> float:
    """Win probability in [0, 1] for the simulated game."""
    mean = float(genome.weights.mean()) if genome.weights.size else 0.0
    return float(1.0 / (1.0 + np.exp(-sharpness * mean)))


@dataclass
class SimulatedChannel:
    """RemoteChannel backed by a local game model.

    Remembers the last genome pushed to each worker and answers evaluation
    requests for it with a sealed WorkerReport.
    """

    seed: int | None = None
    game_duration_s: float = 0.0
    faults: FaultRates = field(default_factory=FaultRates)
    _pushed: dict[str, tuple[NetworkGenome, str]] = field(default_factory=dict, init=False)
    _rng: np.random.Generator = field(init=False)

    def __post_init__(self) -> None:
        self._rng = np.random.default_rng(self.seed)

    async def push_genome(self, worker_name: str, payload: bytes, checksum: str) -> None:
        self._maybe_unreachable(worker_name)
        if payload_checksum(payload) != checksum:
            raise CorruptPayloadError(f"{worker_name} received a genome that does not match its checksum")
        self._pushed[worker_name] = (deserialize(payload), checksum)

    async def request_evaluation(self, worker_name: str, request: bytes) -> bytes:
        self._maybe_unreachable(worker_name)
        envelope = decode_request(request)
        pushed = self._pushed.get(worker_name)
        if pushed is None or pushed[0].id != envelope.genome_id:
            raise TransportError(f"{worker_name} has no genome {envelope.genome_id}")
        genome, checksum = pushed

        games_to_play = envelope.games_to_play
        stopped_early = False
        if games_to_play > 1 and self._rng.random() < self.faults.partial:
            games_to_play = int(self._rng.integers(0, games_to_play))
            stopped_early = True

        skill = genome_skill(genome)
        games = []
        for _ in range(games_to_play):
            if self.game_duration_s:
                await asyncio.sleep(self.game_duration_s)
            games.append(self._play_game(skill))

        payload = encode_report(
            WorkerReport(
                request_id=envelope.request_id,
                genome_id=genome.id,
                genome_checksum=checksum,
                games=games,
                stopped_early=stopped_early,
            )
        )
        if self._rng.random() < self.faults.corrupt:
            logger.debug("simulated_corruption", worker=worker_name, genome_id=genome.id)
            payload = payload[:-2] + b"!}"
        return payload

    def _play_game(self, skill: float) -> GameOutcome:
        """Game statistics that improve with ``skill``, with some noise."""
        rng = self._rng
        won = bool(rng.random() < skill)
        total_frames = int(rng.integers(6000, 36000))
        valid_actions = int(rng.integers(50, 200) * (0.5 + skill))
        gathered = int(rng.integers(500, 5000) * (0.5 + skill))
        dealt = float(rng.uniform(0.0, 3000.0) * skill)
        return GameOutcome(
            won=won,
            duration_s=float(rng.uniform(300.0, 3000.0) * (1.0 - 0.5 * skill if won else 1.0)),
            game_score=float(np.clip(skill * 10000.0 + rng.normal(0.0, 500.0), 0.0, None)),
            units_built=int(rng.poisson(20 * (0.5 + skill))),
            units_lost=int(rng.poisson(15 * (1.5 - skill))),
            units_killed=int(rng.poisson(15 * (0.5 + skill))),
            buildings_built=int(rng.poisson(8 * (0.5 + skill))),
            buildings_lost=int(rng.poisson(4 * (1.5 - skill))),
            buildings_destroyed=int(rng.poisson(4 * (0.5 + skill))),
            resources_gathered=gathered,
            resources_spent=int(gathered * rng.uniform(0.5, 1.0)),
            valid_actions=valid_actions,
            invalid_actions=int(rng.poisson(valid_actions * 0.2 * (1.0 - skill))),
            idle_frames=int(total_frames * rng.uniform(0.1, 0.9) * (1.0 - skill)),
            total_frames=total_frames,
            exploration_score=float(rng.uniform(0.0, 50.0) * skill),
            damage_dealt=dealt,
            damage_received=float(rng.uniform(0.0, 3000.0) * (1.0 - skill)),
        )

    def _maybe_unreachable(self, worker_name: str) -> None:
        if self._rng.random() < self.faults.unreachable:
            raise TransportError(f"{worker_name} is unreachable")
