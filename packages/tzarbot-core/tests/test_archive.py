"""Tests for the SQLite generation archive."""

import pytest

from tzarbot.communication.wire import EvaluationResult
from tzarbot.config import OrchestratorConfig
from tzarbot.errors import ArchiveError, ErrorKind
from tzarbot.evolution.statistics import GenerationRecord
from tzarbot.persistence import DatabaseManager, GenerationArchive


@pytest.mark.asyncio
async def test_records_generations_and_evaluations(tmp_path):
    async with DatabaseManager(tmp_path / "state" / "archive.db") as db:
        archive = GenerationArchive(db, run_id="run-1")
        await archive.start_run(OrchestratorConfig())

        results = [
            EvaluationResult(genome_id="g1", fitness=0.9, games_played=3, wins=2, worker_name="w0"),
            EvaluationResult.failure("g2", ErrorKind.UNREACHABLE, "gone", worker_name="w1"),
        ]
        for generation in range(2):
            record = GenerationRecord(
                generation=generation,
                stage="Bootstrap",
                best_fitness=0.9 + generation,
                best_genome_id="g1",
                failed_count=1,
            )
            await archive.record_generation(record, results)
        await archive.finish_run()

        history = await archive.history()
        assert [r.generation for r in history] == [0, 1]
        assert history[1].best_fitness == pytest.approx(1.9)
        assert history[0].failed_count == 1

        evaluations = await archive.evaluations("g2")
        assert len(evaluations) == 2
        assert evaluations[0]["failed"] is True
        assert evaluations[0]["error_kind"] == "unreachable"

        runs = await archive.runs()
        assert runs[0]["run_id"] == "run-1"
        assert runs[0]["finished_at"] is not None
        assert runs[0]["config"]["workers"]["pool_capacity"] == 3

    assert (tmp_path / "state" / ".gitignore").read_text().splitlines()[0] == "*.db"


@pytest.mark.asyncio
async def test_reopening_keeps_schema(tmp_path):
    path = tmp_path / "archive.db"
    async with DatabaseManager(path) as db:
        await GenerationArchive(db, run_id="a").start_run(OrchestratorConfig())
    async with DatabaseManager(path) as db:
        rows = await db.execute("SELECT MAX(version) AS v FROM schema_version")
        assert rows[0]["v"] == 1
        assert len(await GenerationArchive(db).runs()) == 1


@pytest.mark.asyncio
async def test_uninitialized_database_raises(tmp_path):
    archive = GenerationArchive(DatabaseManager(tmp_path / "archive.db"))
    with pytest.raises(ArchiveError):
        await archive.history()
