"""Durable archive of generation records and per-genome evaluation outcomes.

The checkpoint only holds what is needed to resume; the archive keeps every
generation of every run so history can be queried after the fact.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import aiosqlite
import structlog

from tzarbot.communication.wire import EvaluationResult
from tzarbot.config import OrchestratorConfig
from tzarbot.errors import ArchiveError
from tzarbot.evolution.statistics import GenerationRecord
from tzarbot.persistence.db import DatabaseManager

log = structlog.get_logger(__name__)


class GenerationArchive:
    """Writes one run's generations into an initialized DatabaseManager."""

    def __init__(self, db: DatabaseManager, run_id: str | None = None) -> None:
        self._db = db
        self.run_id = run_id or str(uuid.uuid4())

    async def start_run(self, config: OrchestratorConfig) -> None:
        now = datetime.now(UTC).isoformat()
        try:
            await self._db.execute_write(
                """
                INSERT INTO runs (run_id, population_size, games_per_genome, pool_capacity, config, started_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(run_id) DO UPDATE SET finished_at = NULL
                """,
                (
                    self.run_id,
                    config.evolution.population_size,
                    config.evaluation.games_per_evaluation,
                    config.workers.pool_capacity,
                    config.model_dump_json(),
                    now,
                ),
            )
        except aiosqlite.Error as exc:
            raise ArchiveError(f"cannot record run {self.run_id}: {exc}") from exc
        log.info("archive_run_started", run_id=self.run_id, path=str(self._db.path))

    async def record_generation(self, record: GenerationRecord, results: Sequence[EvaluationResult]) -> None:
        try:
            await self._db.execute_write(
                """
                INSERT OR REPLACE INTO generations (
                    run_id, generation, stage, best_fitness, average_fitness, worst_fitness,
                    fitness_std_dev, win_rate, games_played, elite_count, failed_count,
                    best_genome_id, duration_s, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self.run_id,
                    record.generation,
                    record.stage,
                    record.best_fitness,
                    record.average_fitness,
                    record.worst_fitness,
                    record.fitness_std_dev,
                    record.win_rate,
                    record.games_played,
                    record.elite_count,
                    record.failed_count,
                    record.best_genome_id,
                    record.duration_s,
                    record.timestamp.isoformat(),
                ),
            )
            await self._db.execute_many(
                """
                INSERT OR REPLACE INTO evaluations (
                    run_id, generation, genome_id, fitness, games_played, wins,
                    failed, error_kind, worker_name
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        self.run_id,
                        record.generation,
                        r.genome_id,
                        r.fitness,
                        r.games_played,
                        r.wins,
                        int(r.failed),
                        r.error_kind.value if r.error_kind else None,
                        r.worker_name,
                    )
                    for r in results
                ],
            )
        except aiosqlite.Error as exc:
            raise ArchiveError(f"cannot record generation {record.generation}: {exc}") from exc
        log.debug("archive_generation_recorded", run_id=self.run_id, generation=record.generation)

    async def finish_run(self) -> None:
        try:
            await self._db.execute_write(
                "UPDATE runs SET finished_at = ? WHERE run_id = ?",
                (datetime.now(UTC).isoformat(), self.run_id),
            )
        except aiosqlite.Error as exc:
            raise ArchiveError(f"cannot finish run {self.run_id}: {exc}") from exc

    async def history(self, run_id: str | None = None) -> list[GenerationRecord]:
        """Generation records of ``run_id`` (default: this run), oldest first."""
        rows = await self._query(
            "SELECT * FROM generations WHERE run_id = ? ORDER BY generation",
            (run_id or self.run_id,),
        )
        return [
            GenerationRecord(
                generation=row["generation"],
                stage=row["stage"],
                best_fitness=row["best_fitness"],
                average_fitness=row["average_fitness"],
                worst_fitness=row["worst_fitness"],
                fitness_std_dev=row["fitness_std_dev"],
                elite_count=row["elite_count"],
                win_rate=row["win_rate"],
                games_played=row["games_played"],
                duration_s=row["duration_s"],
                timestamp=datetime.fromisoformat(row["recorded_at"]),
                best_genome_id=row["best_genome_id"],
                failed_count=row["failed_count"],
            )
            for row in rows
        ]

    async def evaluations(self, genome_id: str) -> list[dict[str, Any]]:
        """Every archived evaluation of ``genome_id`` across runs and generations."""
        rows = await self._query(
            "SELECT * FROM evaluations WHERE genome_id = ? ORDER BY run_id, generation",
            (genome_id,),
        )
        for row in rows:
            row["failed"] = bool(row["failed"])
        return rows

    async def runs(self) -> list[dict[str, Any]]:
        rows = await self._query("SELECT * FROM runs ORDER BY started_at")
        for row in rows:
            row["config"] = json.loads(row["config"])
        return rows

    async def _query(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        try:
            return await self._db.execute(sql, params)
        except aiosqlite.Error as exc:
            raise ArchiveError(f"archive query failed: {exc}") from exc
