"""Entry point for the ``tzarbot-orchestrator`` command."""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

import structlog

from tzarbot.config import CheckpointConfig, OrchestratorConfig
from tzarbot.errors import ArchiveError, CheckpointError, ConfigurationError
from tzarbot.log import configure_logging
from tzarbot.persistence import DatabaseManager, GenerationArchive
from tzarbot.settings import Settings
from tzarbot.simulation import SimulatedChannel, SimulatedControlPlane
from tzarbot.training.checkpoint import CheckpointStore
from tzarbot.training.orchestrator import OrchestratorService

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="tzarbot-orchestrator", description="Distributed neuroevolution orchestrator.")
    p.add_argument("--log-level", default=None, help="Overrides TZARBOT_LOG_LEVEL")
    sub = p.add_subparsers(dest="cmd", required=True)

    run_p = sub.add_parser("run", help="Train a population on the worker pool")
    run_p.add_argument("--config", type=Path, default=None, help="JSON configuration file")
    run_p.add_argument("--simulate", action="store_true", help="Use in-process simulated VMs and games")
    run_p.add_argument("--generations", type=int, default=None, help="Stop after this many generations")
    run_p.add_argument("--resume", action="store_true", help="Continue from the checkpoint file if present")

    inspect_p = sub.add_parser("inspect-checkpoint", help="Summarize a checkpoint file")
    inspect_p.add_argument("path", type=Path)
    return p


async def run_training(config: OrchestratorConfig, simulate: bool, resume: bool) -> int:
    if not simulate:
        raise ConfigurationError("no VM control plane is available in this build; pass --simulate")

    seed = config.evolution.seed
    db: DatabaseManager | None = None
    archive: GenerationArchive | None = None
    if config.archive_path is not None:
        db = DatabaseManager(config.archive_path)
        try:
            await db.initialize()
        except ArchiveError as exc:
            raise ConfigurationError(f"cannot open archive {config.archive_path}: {exc}") from exc
        archive = GenerationArchive(db)

    service = OrchestratorService.create(
        config,
        SimulatedControlPlane(seed=seed),
        SimulatedChannel(seed=seed),
        archive=archive,
    )
    try:
        if resume:
            await service.restore()

        run_task = asyncio.create_task(service.run(), name="orchestrator")
        stopping: set[asyncio.Task[None]] = set()

        def _request_stop() -> None:
            logger.info("stop_requested")
            task = asyncio.create_task(service.stop())
            stopping.add(task)
            task.add_done_callback(stopping.discard)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, _request_stop)

        state = await run_task
    finally:
        if db is not None:
            await db.close()

    print(f"Stopped at generation {state.current_generation}")
    print(f"Games played: {state.total_games_played}, win rate: {state.overall_win_rate:.1%}")
    if state.best_fitness is not None:
        print(f"Best fitness: {state.best_fitness:.4f} ({state.best_genome_id})")
    for record in state.history[-10:]:
        print(
            f"  Gen {record.generation}: best={record.best_fitness:.4f} "
            f"avg={record.average_fitness:.4f} std={record.fitness_std_dev:.4f}"
        )
    return 0


async def inspect_checkpoint(path: Path) -> int:
    checkpoint = await CheckpointStore(CheckpointConfig(path=path)).load()
    if checkpoint is None:
        print(f"No checkpoint at {path}", file=sys.stderr)
        return 1
    evaluated = len(checkpoint.results)
    print(f"Checkpoint {path} (saved {checkpoint.saved_at.isoformat()})")
    print(f"Generation: {checkpoint.current_generation}, stage: {checkpoint.current_stage}")
    print(f"Population: {len(checkpoint.population)} genomes, {evaluated} already evaluated")
    print(f"History: {len(checkpoint.history)} generations, {checkpoint.total_games_played} games")
    if checkpoint.best_fitness is not None:
        print(f"Best fitness: {checkpoint.best_fitness:.4f} ({checkpoint.best_genome_id})")
    return 0


def cli(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = Settings.load()
    except ConfigurationError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    configure_logging(args.log_level or settings.log_level, settings.log_format)

    try:
        if args.cmd == "inspect-checkpoint":
            return asyncio.run(inspect_checkpoint(args.path))

        config = settings.to_config(args.config)
        if args.generations is not None:
            data = config.model_dump(mode="json")
            data["evolution"]["max_generations"] = args.generations
            config = OrchestratorConfig.from_mapping(data)
        return asyncio.run(run_training(config, args.simulate, args.resume))
    except (ConfigurationError, CheckpointError) as exc:
        logger.error("startup_failed", error=str(exc))
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(cli())
