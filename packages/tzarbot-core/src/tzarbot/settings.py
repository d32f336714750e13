"""Process configuration via environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import ValidationError
from pydantic_settings import BaseSettings

from tzarbot.config import OrchestratorConfig
from tzarbot.errors import ConfigurationError


class Settings(BaseSettings):
    # Logging
    log_level: str = "INFO"
    log_format: str = "console"

    # Base configuration file (JSON); overrides below are applied on top
    config_file: Path | None = None

    # Worker pool
    pool_capacity: int | None = None
    max_consecutive_failures: int | None = None

    # Evaluation
    games_per_evaluation: int | None = None
    evaluation_deadline_s: float | None = None
    retry_max_attempts: int | None = None
    retry_base_delay_s: float | None = None

    # Evolution
    population_size: int | None = None
    elite_count: int | None = None
    seed: int | None = None

    # Checkpointing
    checkpoint_path: Path | None = None
    checkpoint_interval: int | None = None
    archive_path: Path | None = None

    model_config = {
        "env_prefix": "TZARBOT_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @classmethod
    def load(cls) -> Settings:
        """Read the environment, raising ConfigurationError on bad values."""
        try:
            return cls()
        except ValidationError as exc:
            raise ConfigurationError(f"invalid TZARBOT_ environment settings: {exc}") from exc

    def to_config(self, config_file: Path | None = None) -> OrchestratorConfig:
        """Build a validated OrchestratorConfig from the file plus env overrides."""
        source = config_file or self.config_file
        base = OrchestratorConfig.from_file(source) if source else OrchestratorConfig()
        data: dict[str, Any] = base.model_dump(mode="json")

        overrides = {
            ("workers", "pool_capacity"): self.pool_capacity,
            ("workers", "max_consecutive_failures"): self.max_consecutive_failures,
            ("evaluation", "games_per_evaluation"): self.games_per_evaluation,
            ("evaluation", "deadline_s"): self.evaluation_deadline_s,
            ("evolution", "population_size"): self.population_size,
            ("evolution", "elite_count"): self.elite_count,
            ("evolution", "seed"): self.seed,
            ("checkpoint", "path"): self.checkpoint_path,
            ("checkpoint", "interval"): self.checkpoint_interval,
        }
        for (section, key), value in overrides.items():
            if value is not None:
                data[section][key] = value
        if self.retry_max_attempts is not None:
            data["evaluation"]["retry"]["max_attempts"] = self.retry_max_attempts
        if self.retry_base_delay_s is not None:
            data["evaluation"]["retry"]["base_delay_s"] = self.retry_base_delay_s
        if self.archive_path is not None:
            data["archive_path"] = self.archive_path

        return OrchestratorConfig.from_mapping(data)
