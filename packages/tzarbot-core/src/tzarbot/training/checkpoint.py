"""Durable snapshots of TrainingState.

The checkpoint file is a sealed JSON envelope written to a temporary file,
fsynced and renamed over the previous checkpoint, so a crash leaves either
the old or the new snapshot on disk and never a partial one.
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, Field, ValidationError

from tzarbot.communication.wire import EvaluationResult
from tzarbot.config import CheckpointConfig
from tzarbot.errors import CheckpointError, CorruptPayloadError
from tzarbot.evolution.statistics import GenerationRecord
from tzarbot.genome.codec import GenomeEnvelope
from tzarbot.integrity import seal, unseal
from tzarbot.training.state import TrainingState, TrainingStatus

logger = structlog.get_logger()

CHECKPOINT_VERSION = 1


class Checkpoint(BaseModel):
    """Serializable form of TrainingState."""
    version: int = CHECKPOINT_VERSION
    saved_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    current_generation: int = Field(ge=0)
    current_stage: str
    population: list[GenomeEnvelope]
    results: list[EvaluationResult] = Field(default_factory=list)
    history: list[GenerationRecord] = Field(default_factory=list)
    best_genome_id: str | None = None
    best_fitness: float | None = None
    generations_since_improvement: int = 0
    total_games_played: int = 0
    total_wins: int = 0
    training_started_at: datetime | None = None
    elo_ratings: dict[str, float] = Field(default_factory=dict)
    rng_state: dict[str, Any] | None = None

    @classmethod
    def from_state(cls, state: TrainingState, rng_state: dict[str, Any] | None = None) -> Checkpoint:
        return cls(
            current_generation=state.current_generation,
            current_stage=state.current_stage,
            population=[GenomeEnvelope.from_genome(g) for g in state.population],
            results=list(state.results.values()),
            history=list(state.history),
            best_genome_id=state.best_genome_id,
            best_fitness=state.best_fitness,
            generations_since_improvement=state.generations_since_improvement,
            total_games_played=state.total_games_played,
            total_wins=state.total_wins,
            training_started_at=state.training_started_at,
            elo_ratings=dict(state.elo_ratings),
            rng_state=rng_state,
        )

    def to_state(self) -> TrainingState:
        """Rebuild a TrainingState in status Idle."""
        population = [envelope.to_genome() for envelope in self.population]
        ids = {g.id for g in population}
        return TrainingState(
            current_stage=self.current_stage,
            status=TrainingStatus.IDLE,
            current_generation=self.current_generation,
            population=population,
            results={r.genome_id: r for r in self.results if r.genome_id in ids},
            history=list(self.history),
            best_genome_id=self.best_genome_id,
            best_fitness=self.best_fitness,
            generations_since_improvement=self.generations_since_improvement,
            total_games_played=self.total_games_played,
            total_wins=self.total_wins,
            training_started_at=self.training_started_at,
            elo_ratings=dict(self.elo_ratings),
        )

    def encode(self) -> bytes:
        return seal(self.model_dump(mode="json"))

    @classmethod
    def decode(cls, payload: bytes) -> Checkpoint:
        body = unseal(payload)
        try:
            checkpoint = cls.model_validate(body)
        except ValidationError as exc:
            raise CorruptPayloadError(f"checkpoint failed validation: {exc}") from exc
        if checkpoint.version != CHECKPOINT_VERSION:
            raise CorruptPayloadError(f"unsupported checkpoint version {checkpoint.version}")
        return checkpoint


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    with open(tmp, "wb") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, path)


class CheckpointStore:
    """Writes and reads the checkpoint file with retry and backoff."""

    def __init__(self, config: CheckpointConfig) -> None:
        self._config = config

    @property
    def path(self) -> Path:
        return self._config.path

    def exists(self) -> bool:
        return self._config.path.exists()

    async def save(self, checkpoint: Checkpoint) -> Path:
        """Write ``checkpoint`` atomically; raises CheckpointError once retries run out."""
        data = checkpoint.encode()
        retry = self._config.retry
        for attempt in range(retry.max_attempts):
            try:
                await asyncio.to_thread(_write_atomic, self._config.path, data)
            except OSError as exc:
                if attempt + 1 >= retry.max_attempts:
                    raise CheckpointError(
                        f"checkpoint write to {self._config.path} failed after {retry.max_attempts} attempts: {exc}"
                    ) from exc
                delay = retry.delay_for(attempt)
                logger.warning(
                    "checkpoint_write_retry",
                    path=str(self._config.path),
                    attempt=attempt + 1,
                    delay_s=delay,
                    error=str(exc),
                )
                await asyncio.sleep(delay)
                continue
            logger.info(
                "checkpoint_saved",
                path=str(self._config.path),
                generation=checkpoint.current_generation,
                population=len(checkpoint.population),
                bytes=len(data),
            )
            return self._config.path
        raise CheckpointError("checkpoint retry policy allows no attempts")

    async def load(self) -> Checkpoint | None:
        """The stored checkpoint, or None if there is none; raises CheckpointError if unreadable."""
        path = self._config.path
        if not path.exists():
            return None
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise CheckpointError(f"cannot read checkpoint {path}: {exc}") from exc
        try:
            checkpoint = Checkpoint.decode(data)
        except CorruptPayloadError as exc:
            raise CheckpointError(f"checkpoint {path} is corrupt: {exc}") from exc
        logger.info("checkpoint_loaded", path=str(path), generation=checkpoint.current_generation)
        return checkpoint
