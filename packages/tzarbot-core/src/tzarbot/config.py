"""Configuration for TzarBot training runs."""

from __future__ import annotations

import json
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator

from tzarbot.errors import ConfigurationError


class SelectionStrategy(str, Enum):
    """Parent selection weighting."""
    TOURNAMENT = "tournament"
    FITNESS_PROPORTIONATE = "fitness_proportionate"
    RANK = "rank"


class CrossoverMethod(str, Enum):
    """How two parents are recombined."""
    UNIFORM = "uniform"        # per-layer structure from either parent, weights blended where they overlap
    ARITHMETIC = "arithmetic"  # weight blend for matching topologies, else the fitter parent


class FitnessPreset(str, Enum):
    DEFAULT = "default"
    EARLY_TRAINING = "early_training"
    COMPETITIVE = "competitive"


_FITNESS_PRESETS: dict[FitnessPreset, dict[str, float]] = {
    FitnessPreset.DEFAULT: {},
    FitnessPreset.EARLY_TRAINING: {
        "win_bonus": 50.0,
        "time_bonus": 20.0,
        "unit_weight": 2.0,
        "building_weight": 2.0,
        "resource_weight": 1.0,
        "activity_weight": 2.0,
        "inactivity_penalty": 20.0,
        "invalid_action_penalty": 10.0,
        "loss_penalty": 5.0,
        "quick_loss_penalty": 10.0,
        "minimum_fitness": -50.0,
    },
    FitnessPreset.COMPETITIVE: {
        "win_bonus": 200.0,
        "time_bonus": 100.0,
        "unit_weight": 0.5,
        "building_weight": 0.5,
        "combat_weight": 2.0,
        "activity_weight": 0.5,
        "inactivity_penalty": 100.0,
        "invalid_action_penalty": 50.0,
        "loss_penalty": 50.0,
        "quick_loss_penalty": 50.0,
        "minimum_fitness": -200.0,
    },
}


class FitnessWeights(BaseModel):
    """Weights of the per-game fitness terms.

    ``preset`` fills in every weight not given explicitly, so
    ``{"preset": "competitive", "win_bonus": 150}`` is the competitive
    table with a smaller win bonus.
    """
    preset: FitnessPreset = FitnessPreset.DEFAULT
    win_bonus: float = 100.0
    time_bonus: float = Field(default=50.0, description="Scaled by how much of the time limit a win left unused")
    unit_weight: float = 1.0
    building_weight: float = 1.0
    resource_weight: float = 0.5
    combat_weight: float = 1.5
    activity_weight: float = 1.0
    exploration_weight: float = 0.3
    game_score_weight: float = Field(default=0.1, description="Applied to the in-game score divided by 10000")
    inactivity_penalty: float = Field(default=50.0, ge=0.0)
    invalid_action_penalty: float = Field(default=30.0, ge=0.0)
    loss_penalty: float = Field(default=10.0, ge=0.0)
    quick_loss_penalty: float = Field(default=20.0, ge=0.0)
    quick_loss_s: float = Field(default=60.0, ge=0.0, description="Losses shorter than this get the extra penalty")
    minimum_fitness: float = Field(default=-100.0, description="Floor of a single game's fitness")

    @model_validator(mode="before")
    @classmethod
    def _apply_preset(cls, data: Any) -> Any:
        if isinstance(data, dict) and "preset" in data:
            return {**_FITNESS_PRESETS[FitnessPreset(data["preset"])], **data}
        return data

    @classmethod
    def for_preset(cls, preset: FitnessPreset | str) -> FitnessWeights:
        return cls(preset=preset)


class RetryPolicy(BaseModel):
    """Exponential backoff: ``min(base_delay_s * multiplier**attempt, max_delay_s)``."""
    max_attempts: int = Field(default=3, ge=1, le=20, description="Attempts before giving up")
    base_delay_s: float = Field(default=2.0, ge=0.0)
    max_delay_s: float = Field(default=60.0, ge=0.0)
    multiplier: float = Field(default=2.0, ge=1.0)

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.base_delay_s * (self.multiplier**attempt), self.max_delay_s)


class WorkerConfig(BaseModel):
    """VM worker pool sizing and recovery policy."""
    pool_capacity: int = Field(default=3, ge=1, le=64, description="Number of VM evaluation slots")
    name_prefix: str = Field(default="TzarBot-Worker-", min_length=1)
    provision_timeout_s: float = Field(default=120.0, gt=0.0, description="Time allowed for a VM to report ready")
    ready_poll_interval_s: float = Field(default=2.0, gt=0.0)
    max_consecutive_failures: int = Field(
        default=3, ge=1, description="Failures in a row before a worker is taken Offline"
    )
    recovery_delay_s: float = Field(default=30.0, ge=0.0, description="Pause before resetting a failed worker")


class EvaluationConfig(BaseModel):
    """Per-genome evaluation request parameters."""
    games_per_evaluation: int = Field(default=3, ge=1, le=100)
    deadline_s: float = Field(default=600.0, gt=0.0, description="Deadline for one evaluation attempt")
    max_dispatch_attempts: int = Field(
        default=3, ge=1, description="Workers a genome may fail on before it is scored as failed"
    )
    failure_fitness: float | None = Field(
        default=None, description="Fitness of a genome that could not be evaluated; the fitness floor when unset"
    )
    fitness: FitnessWeights = Field(default_factory=FitnessWeights)
    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    @property
    def minimum_fitness(self) -> float:
        """What a genome that could not be evaluated scores."""
        return self.failure_fitness if self.failure_fitness is not None else self.fitness.minimum_fitness


class NetworkConfig(BaseModel):
    """Topology bounds for genomes."""
    input_size: int = Field(default=512, ge=1, description="Flattened feature vector fed to the first dense layer")
    hidden_layers: list[int] = Field(default_factory=lambda: [256, 128], min_length=1)
    mouse_head_size: int = Field(default=2, ge=1)
    action_head_size: int = Field(default=30, ge=1)
    min_neurons: int = Field(default=64, ge=1)
    max_neurons: int = Field(default=1024, ge=1)
    max_hidden_layers: int = Field(default=5, ge=1)
    max_dropout: float = Field(default=0.5, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_bounds(self) -> NetworkConfig:
        if self.min_neurons > self.max_neurons:
            raise ValueError("min_neurons must not exceed max_neurons")
        if len(self.hidden_layers) > self.max_hidden_layers:
            raise ValueError("hidden_layers exceeds max_hidden_layers")
        for size in self.hidden_layers:
            if not self.min_neurons <= size <= self.max_neurons:
                raise ValueError(f"hidden layer size {size} outside [{self.min_neurons}, {self.max_neurons}]")
        return self


class EvolutionConfig(BaseModel):
    """Genetic algorithm parameters."""
    population_size: int = Field(default=20, ge=2, le=1000)
    elite_count: int = Field(default=1, ge=0, description="Top genomes carried unmodified")
    selection: SelectionStrategy = SelectionStrategy.TOURNAMENT
    tournament_size: int = Field(default=3, ge=1)
    crossover_rate: float = Field(default=0.7, ge=0.0, le=1.0)
    crossover_method: CrossoverMethod = CrossoverMethod.UNIFORM
    crossover_alpha: float = Field(default=0.5, ge=0.0, le=1.0, description="Weight of the first parent when blending matching topologies")
    inherit_from_better_parent: bool = Field(
        default=True, description="Uniform crossover takes its layer count from the fitter parent"
    )
    mutation_rate: float = Field(default=0.3, ge=0.0, le=1.0)
    perturbation_rate: float = Field(default=0.1, ge=0.0, le=1.0, description="Share of weights touched by a mutation")
    mutation_strength: float = Field(default=0.5, ge=0.0)
    reset_rate: float = Field(default=0.01, ge=0.0, le=1.0)
    min_weight: float = -10.0
    max_weight: float = 10.0
    structure_mutation_rate: float = Field(default=0.05, ge=0.0, le=1.0)
    neuron_delta: int = Field(default=32, ge=1)
    initial_stage: str = "Bootstrap"
    max_generations: int | None = Field(default=None, ge=1)
    seed: int | None = None
    initial_elo: float = 1000.0
    opponent_elo: float = 1000.0
    elo_k_factor: float = Field(default=32.0, gt=0.0)

    @model_validator(mode="after")
    def _check_ranges(self) -> EvolutionConfig:
        if self.elite_count >= self.population_size:
            raise ValueError("elite_count must be smaller than population_size")
        if self.min_weight >= self.max_weight:
            raise ValueError("min_weight must be below max_weight")
        return self


class CheckpointConfig(BaseModel):
    """Where and how often training state is persisted."""
    path: Path = Path(".tzarbot/checkpoint.json")
    interval: int = Field(default=1, ge=1, description="Checkpoint every N completed generations")
    retry: RetryPolicy = Field(default_factory=lambda: RetryPolicy(base_delay_s=1.0, max_delay_s=30.0))


class OrchestratorConfig(BaseModel):
    """Top-level configuration for an orchestrator process."""
    workers: WorkerConfig = Field(default_factory=WorkerConfig)
    evaluation: EvaluationConfig = Field(default_factory=EvaluationConfig)
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    evolution: EvolutionConfig = Field(default_factory=EvolutionConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    archive_path: Path | None = Field(default=None, description="SQLite generation archive; disabled when unset")
    status_report_interval_s: float = Field(default=30.0, gt=0.0)
    history_limit: int = Field(default=500, ge=1, description="GenerationRecords kept in the observer feed")
    activity_limit: int = Field(default=100, ge=1)

    model_config = {"populate_by_name": True}

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> OrchestratorConfig:
        """Validate raw configuration, raising ConfigurationError on bad values."""
        try:
            return cls.model_validate(data)
        except ValidationError as exc:
            raise ConfigurationError(f"invalid orchestrator configuration: {exc}") from exc

    @classmethod
    def from_file(cls, path: Path | str) -> OrchestratorConfig:
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"cannot read configuration file {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"configuration file {path} must hold a JSON object")
        return cls.from_mapping(data)
