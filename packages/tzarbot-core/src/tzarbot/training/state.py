"""Training state owned by the control loop, plus the read-only views observers get."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

from tzarbot.communication.wire import EvaluationResult
from tzarbot.errors import InvalidStateError
from tzarbot.evolution.statistics import GenerationRecord
from tzarbot.genome.model import NetworkGenome


class TrainingStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


_STATUS_TRANSITIONS: dict[TrainingStatus, frozenset[TrainingStatus]] = {
    TrainingStatus.IDLE: frozenset({TrainingStatus.RUNNING, TrainingStatus.STOPPED}),
    TrainingStatus.RUNNING: frozenset({TrainingStatus.PAUSED, TrainingStatus.STOPPED}),
    TrainingStatus.PAUSED: frozenset({TrainingStatus.RUNNING, TrainingStatus.STOPPED}),
    TrainingStatus.STOPPED: frozenset(),
}


class ActivityLevel(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class ActivityEntry(BaseModel):
    """One line of the user-facing activity log."""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    level: ActivityLevel = ActivityLevel.INFO
    message: str
    generation: int | None = None
    genome_id: str | None = None


class GenomeSummary(BaseModel):
    id: str
    generation: int
    fitness: float | None = None
    elo_rating: float
    games_played: int = 0
    wins: int = 0
    hidden_layer_count: int
    parameter_count: int

    @property
    def win_rate(self) -> float:
        return self.wins / self.games_played if self.games_played else 0.0


class WorkerStatusView(BaseModel):
    name: str
    state: str
    current_genome_id: str | None = None
    completed_evaluations: int = 0
    failed_evaluations: int = 0
    cpu_usage: float = 0.0
    memory_usage: float = 0.0


class DashboardSnapshot(BaseModel):
    status: TrainingStatus
    current_generation: int
    current_stage: str
    best_fitness: float
    average_fitness: float
    population_size: int
    total_games_played: int
    win_rate: float
    training_started_at: datetime | None = None


@dataclass
class TrainingState:
    """Population, results and history for the whole run.

    Mutated only by the orchestrator's control loop. ``results`` holds the
    current generation's results keyed by genome id; elites enter a new
    generation with their previous result already present.
    """

    current_stage: str = "Bootstrap"
    status: TrainingStatus = TrainingStatus.IDLE
    current_generation: int = 0
    population: list[NetworkGenome] = field(default_factory=list)
    results: dict[str, EvaluationResult] = field(default_factory=dict)
    history: list[GenerationRecord] = field(default_factory=list)
    best_genome_id: str | None = None
    best_fitness: float | None = None
    generations_since_improvement: int = 0
    total_games_played: int = 0
    total_wins: int = 0
    training_started_at: datetime | None = None
    elo_ratings: dict[str, float] = field(default_factory=dict)

    def transition(self, new_status: TrainingStatus) -> TrainingStatus:
        """Move to ``new_status``; returns the previous status."""
        if new_status not in _STATUS_TRANSITIONS[self.status]:
            raise InvalidStateError(f"training cannot go from {self.status.value} to {new_status.value}")
        previous = self.status
        self.status = new_status
        return previous

    def pending(self) -> list[NetworkGenome]:
        """Genomes of the current generation still without a result, in population order."""
        return [g for g in self.population if g.id not in self.results]

    @property
    def generation_complete(self) -> bool:
        return bool(self.population) and all(g.id in self.results for g in self.population)

    @property
    def overall_win_rate(self) -> float:
        return self.total_wins / self.total_games_played if self.total_games_played else 0.0
