"""Per-generation fitness statistics."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime

import numpy as np
from pydantic import BaseModel, Field

from tzarbot.communication.wire import EvaluationResult


class GenerationRecord(BaseModel):
    """Summary of one completed generation. Append-only."""
    generation: int = Field(ge=0)
    stage: str
    best_fitness: float = 0.0
    average_fitness: float = 0.0
    worst_fitness: float = 0.0
    fitness_std_dev: float = 0.0
    elite_count: int = 0
    win_rate: float = 0.0
    games_played: int = 0
    duration_s: float = 0.0
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    best_genome_id: str | None = None
    improvement: float = 0.0
    evaluated_count: int = 0
    failed_count: int = 0


def summarize_generation(
    generation: int,
    stage: str,
    results: Sequence[EvaluationResult],
    elite_count: int,
    duration_s: float,
    previous_best: float | None,
) -> GenerationRecord:
    """Build the GenerationRecord for ``results``.

    Fitness statistics cover non-failed results only; the standard
    deviation is the sample deviation (0 below two values). Games and wins
    count only results played in this generation, so carried-over elites
    are not counted twice. ``improvement`` is 0 for generation 0 or when
    there is no previous record.
    """
    scored = [r for r in results if not r.failed]
    fresh = [r for r in results if r.generation is None or r.generation == generation]
    games = sum(r.games_played for r in fresh)
    wins = sum(r.wins for r in fresh)

    best = average = worst = std_dev = 0.0
    best_id: str | None = None
    if scored:
        values = np.array([r.fitness for r in scored], dtype=np.float64)
        best_index = int(np.argmax(values))
        best = float(values[best_index])
        best_id = scored[best_index].genome_id
        average = float(values.mean())
        worst = float(values.min())
        std_dev = float(values.std(ddof=1)) if values.size > 1 else 0.0

    improvement = 0.0
    if generation > 0 and previous_best is not None:
        improvement = best - previous_best

    return GenerationRecord(
        generation=generation,
        stage=stage,
        best_fitness=best,
        average_fitness=average,
        worst_fitness=worst,
        fitness_std_dev=std_dev,
        elite_count=elite_count,
        win_rate=wins / games if games else 0.0,
        games_played=games,
        duration_s=duration_s,
        best_genome_id=best_id,
        improvement=improvement,
        evaluated_count=len(scored),
        failed_count=len(results) - len(scored),
    )
