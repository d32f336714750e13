"""Evaluation request/result messages and their wire encoding.

The orchestrator sends a sealed request naming the genome (already pushed
to the worker together with its checksum) and the number of games to play.
The worker answers with a sealed ``WorkerReport`` holding one outcome per
game actually played; ``result_from_report`` turns that into the
``EvaluationResult`` the rest of the system consumes.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from pydantic import BaseModel, Field, ValidationError, model_validator

from tzarbot.errors import CorruptPayloadError, ErrorKind, InvalidStateError
from tzarbot.evolution.fitness import FitnessCalculator, average_fitness
from tzarbot.genome.model import NetworkGenome
from tzarbot.integrity import seal, unseal


@dataclass(frozen=True)
class EvaluationRequest:
    """One dispatch of a genome to a worker."""

    genome: NetworkGenome
    games_to_play: int
    timeout_s: float
    request_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    deadline: datetime | None = None

    def __post_init__(self) -> None:
        if self.games_to_play < 1:
            raise ValueError("games_to_play must be at least 1")
        if self.deadline is None:
            object.__setattr__(self, "deadline", datetime.now(UTC) + timedelta(seconds=self.timeout_s))

    def seconds_remaining(self) -> float:
        if self.deadline is None:
            raise InvalidStateError(f"request {self.request_id} has no deadline")
        return (self.deadline - datetime.now(UTC)).total_seconds()

    def renewed(self) -> EvaluationRequest:
        """Fresh id and deadline; the worker discards the superseded request."""
        return replace(self, request_id=str(uuid.uuid4()), deadline=None)

    def encode(self, genome_checksum: str) -> bytes:
        return seal(
            RequestEnvelope(
                request_id=self.request_id,
                genome_id=self.genome.id,
                genome_checksum=genome_checksum,
                games_to_play=self.games_to_play,
                deadline=self.deadline,
            ).model_dump(mode="json")
        )


class RequestEnvelope(BaseModel):
    request_id: str
    genome_id: str
    genome_checksum: str
    games_to_play: int = Field(ge=1)
    deadline: datetime


class GameOutcome(BaseModel):
    """Statistics of one game played by the worker."""
    won: bool
    duration_s: float = Field(default=0.0, ge=0.0, description="In-game duration")
    max_duration_s: float = Field(default=3600.0, ge=0.0, description="Time limit used to normalize duration")
    game_score: float | None = Field(default=None, description="Score shown by the game, when it reports one")
    units_built: int = Field(default=0, ge=0)
    units_lost: int = Field(default=0, ge=0)
    units_killed: int = Field(default=0, ge=0)
    buildings_built: int = Field(default=0, ge=0)
    buildings_lost: int = Field(default=0, ge=0)
    buildings_destroyed: int = Field(default=0, ge=0)
    resources_gathered: int = Field(default=0, ge=0)
    resources_spent: int = Field(default=0, ge=0)
    valid_actions: int = Field(default=0, ge=0)
    invalid_actions: int = Field(default=0, ge=0)
    idle_frames: int = Field(default=0, ge=0)
    total_frames: int = Field(default=0, ge=0)
    exploration_score: float = Field(default=0.0, ge=0.0)
    damage_dealt: float = Field(default=0.0, ge=0.0)
    damage_received: float = Field(default=0.0, ge=0.0)

    @property
    def inactivity_ratio(self) -> float:
        """Share of idle frames; a game with no frames counts as fully idle."""
        return self.idle_frames / self.total_frames if self.total_frames else 1.0

    @property
    def invalid_action_ratio(self) -> float:
        attempted = self.valid_actions + self.invalid_actions
        return self.invalid_actions / attempted if attempted else 0.0

    @property
    def unit_kd_ratio(self) -> float:
        return self.units_killed / self.units_lost if self.units_lost else float(self.units_killed)

    @property
    def time_efficiency(self) -> float:
        return 1.0 - self.duration_s / self.max_duration_s if self.max_duration_s > 0 else 0.0


class WorkerReport(BaseModel):
    """What a worker sends back after playing (some of) the requested games."""
    request_id: str
    genome_id: str
    genome_checksum: str
    games: list[GameOutcome] = Field(default_factory=list)
    stopped_early: bool = False


class EvaluationResult(BaseModel):
    """Fitness of one genome, or the reason it could not be measured."""
    genome_id: str
    fitness: float = 0.0
    games_played: int = Field(default=0, ge=0)
    wins: int = Field(default=0, ge=0)
    failed: bool = False
    error_kind: ErrorKind | None = None
    error_message: str | None = None
    worker_name: str | None = None
    generation: int | None = Field(default=None, description="Generation in which the games were played")

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_counts(self) -> EvaluationResult:
        if self.wins > self.games_played:
            raise ValueError("wins cannot exceed games_played")
        return self

    @classmethod
    def failure(
        cls,
        genome_id: str,
        kind: ErrorKind | None,
        message: str,
        worker_name: str | None = None,
        fitness: float = 0.0,
    ) -> EvaluationResult:
        return cls(
            genome_id=genome_id,
            fitness=fitness,
            failed=True,
            error_kind=kind,
            error_message=message,
            worker_name=worker_name,
        )

    @property
    def win_rate(self) -> float:
        return self.wins / self.games_played if self.games_played else 0.0


def decode_request(payload: bytes) -> RequestEnvelope:
    try:
        return RequestEnvelope.model_validate(unseal(payload))
    except ValidationError as exc:
        raise CorruptPayloadError(f"request failed validation: {exc}") from exc


def encode_report(report: WorkerReport) -> bytes:
    return seal(report.model_dump(mode="json"))


def decode_report(payload: bytes) -> WorkerReport:
    try:
        return WorkerReport.model_validate(unseal(payload))
    except ValidationError as exc:
        raise CorruptPayloadError(f"report failed validation: {exc}") from exc


def result_from_report(
    report: WorkerReport,
    request: EvaluationRequest,
    genome_checksum: str,
    worker_name: str,
    fitness: FitnessCalculator,
) -> EvaluationResult:
    """Check the report answers ``request`` and score the games actually played.

    Raises CorruptPayloadError when the report belongs to another request,
    echoes a different genome checksum, or claims more games than requested.
    """
    if report.request_id != request.request_id or report.genome_id != request.genome.id:
        raise CorruptPayloadError("report does not answer the outstanding request")
    if report.genome_checksum != genome_checksum:
        raise CorruptPayloadError("worker evaluated a genome with a different checksum")
    if len(report.games) > request.games_to_play:
        raise CorruptPayloadError(
            f"report holds {len(report.games)} games but only {request.games_to_play} were requested"
        )

    return EvaluationResult(
        genome_id=report.genome_id,
        fitness=average_fitness(fitness, report.games),
        games_played=len(report.games),
        wins=sum(1 for game in report.games if game.won),
        worker_name=worker_name,
    )
