"""Tests for configuration validation and environment settings."""

import json

import pytest

from tzarbot.config import EvolutionConfig, NetworkConfig, OrchestratorConfig, RetryPolicy
from tzarbot.errors import ConfigurationError
from tzarbot.settings import Settings


def test_defaults():
    config = OrchestratorConfig()
    assert config.workers.pool_capacity == 3
    assert config.evaluation.games_per_evaluation == 3
    assert config.evaluation.retry.max_attempts == 3
    assert config.workers.max_consecutive_failures == 3
    assert config.evolution.population_size == 20
    assert config.checkpoint.interval == 1


def test_backoff_is_capped():
    policy = RetryPolicy(base_delay_s=2.0, max_delay_s=10.0, multiplier=2.0)
    assert [policy.delay_for(i) for i in range(4)] == [2.0, 4.0, 8.0, 10.0]


def test_elite_count_must_be_below_population():
    with pytest.raises(ValueError):
        EvolutionConfig(population_size=4, elite_count=4)


def test_hidden_layers_within_bounds():
    with pytest.raises(ValueError):
        NetworkConfig(hidden_layers=[8], min_neurons=64)


def test_from_mapping_wraps_validation_errors():
    with pytest.raises(ConfigurationError):
        OrchestratorConfig.from_mapping({"workers": {"pool_capacity": 0}})


def test_from_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"workers": {"pool_capacity": 5}, "evolution": {"selection": "rank"}}))
    config = OrchestratorConfig.from_file(path)
    assert config.workers.pool_capacity == 5
    assert config.evolution.selection.value == "rank"

    with pytest.raises(ConfigurationError):
        OrchestratorConfig.from_file(tmp_path / "missing.json")


def test_settings_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"workers": {"pool_capacity": 5}, "evaluation": {"games_per_evaluation": 7}}))
    monkeypatch.setenv("TZARBOT_POOL_CAPACITY", "2")
    monkeypatch.setenv("TZARBOT_RETRY_MAX_ATTEMPTS", "6")
    monkeypatch.setenv("TZARBOT_CHECKPOINT_PATH", str(tmp_path / "c.json"))

    config = Settings(_env_file=None).to_config(path)
    assert config.workers.pool_capacity == 2
    assert config.evaluation.games_per_evaluation == 7
    assert config.evaluation.retry.max_attempts == 6
    assert config.checkpoint.path == tmp_path / "c.json"


def test_settings_reject_invalid_override(monkeypatch):
    monkeypatch.setenv("TZARBOT_POPULATION_SIZE", "1")
    with pytest.raises(ConfigurationError):
        Settings(_env_file=None).to_config()


def test_settings_load_wraps_validation_errors(monkeypatch):
    monkeypatch.setenv("TZARBOT_POPULATION_SIZE", "many")
    with pytest.raises(ConfigurationError):
        Settings.load()
