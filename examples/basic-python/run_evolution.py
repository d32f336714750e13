"""Basic example: train a small population on simulated VMs."""

import asyncio
import tempfile
from pathlib import Path

from tzarbot import OrchestratorConfig, OrchestratorService
from tzarbot.simulation import FaultRates, SimulatedChannel, SimulatedControlPlane


async def main() -> None:
    workdir = Path(tempfile.mkdtemp(prefix="tzarbot-"))
    config = OrchestratorConfig.from_mapping(
        {
            "workers": {"pool_capacity": 3, "ready_poll_interval_s": 0.05, "recovery_delay_s": 0.1},
            "evaluation": {"games_per_evaluation": 5, "retry": {"base_delay_s": 0.01}},
            "network": {"input_size": 32, "hidden_layers": [16], "action_head_size": 4, "min_neurons": 4},
            "evolution": {"population_size": 8, "elite_count": 2, "max_generations": 5, "seed": 42},
            "checkpoint": {"path": str(workdir / "checkpoint.json")},
        }
    )

    # A flaky channel: some calls time out or come back corrupted
    channel = SimulatedChannel(seed=42, faults=FaultRates(unreachable=0.05, corrupt=0.05))
    service = OrchestratorService.create(config, SimulatedControlPlane(boot_delay_s=0.1, seed=42), channel)
    service.observers.on_activity(lambda entry: print(f"[{entry.level.value}] {entry.message}"))

    print(f"Starting training: population={config.evolution.population_size}, "
          f"workers={config.workers.pool_capacity}\n")
    state = await service.run()

    print(f"\nTraining complete at generation {state.current_generation}")
    print(f"Best fitness: {state.best_fitness:.3f}")
    for record in state.history:
        print(f"  Gen {record.generation}: best={record.best_fitness:.3f}, avg={record.average_fitness:.3f}")


if __name__ == "__main__":
    asyncio.run(main())
