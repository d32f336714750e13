"""Schema migrations for the generation archive."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from tzarbot.persistence.db import DatabaseManager

log = structlog.get_logger(__name__)

SCHEMA_VERSION = 1

_DDL_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS schema_version (
        version     INTEGER PRIMARY KEY,
        applied_at  TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    # One row per orchestrator run
    """
    CREATE TABLE IF NOT EXISTS runs (
        run_id              TEXT PRIMARY KEY,
        population_size     INTEGER NOT NULL,
        games_per_genome    INTEGER NOT NULL,
        pool_capacity       INTEGER NOT NULL,
        config              TEXT NOT NULL DEFAULT '{}',
        started_at          TEXT NOT NULL,
        finished_at         TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS generations (
        run_id              TEXT NOT NULL REFERENCES runs(run_id),
        generation          INTEGER NOT NULL,
        stage               TEXT NOT NULL,
        best_fitness        REAL NOT NULL,
        average_fitness     REAL NOT NULL,
        worst_fitness       REAL NOT NULL,
        fitness_std_dev     REAL NOT NULL,
        win_rate            REAL NOT NULL,
        games_played        INTEGER NOT NULL,
        elite_count         INTEGER NOT NULL,
        failed_count        INTEGER NOT NULL DEFAULT 0,
        best_genome_id      TEXT,
        duration_s          REAL NOT NULL,
        recorded_at         TEXT NOT NULL,
        PRIMARY KEY (run_id, generation)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS evaluations (
        run_id              TEXT NOT NULL REFERENCES runs(run_id),
        generation          INTEGER NOT NULL,
        genome_id           TEXT NOT NULL,
        fitness             REAL NOT NULL,
        games_played        INTEGER NOT NULL,
        wins                INTEGER NOT NULL,
        failed              INTEGER NOT NULL DEFAULT 0,
        error_kind          TEXT,
        worker_name         TEXT,
        PRIMARY KEY (run_id, generation, genome_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_generations_run ON generations(run_id)",
    "CREATE INDEX IF NOT EXISTS idx_evaluations_genome ON evaluations(genome_id)",
]


async def run_migrations(db: DatabaseManager) -> None:
    """Create tables and indexes, then record the schema version."""
    for statement in _DDL_STATEMENTS:
        await db.execute_write(statement.strip())

    rows = await db.execute("SELECT MAX(version) AS v FROM schema_version")
    current_version = rows[0]["v"] if rows and rows[0]["v"] is not None else 0

    if current_version < SCHEMA_VERSION:
        await db.execute_write(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
        log.info("migration_applied", version=SCHEMA_VERSION)
    else:
        log.debug("schema_already_current", version=current_version)
