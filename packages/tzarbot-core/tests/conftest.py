"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import numpy as np
import pytest

# Make _helpers importable from test files
sys.path.insert(0, str(Path(__file__).parent))

from _helpers import SMALL_NETWORK, FakeControlPlane, ScriptedChannel, make_config  # noqa: E402

from tzarbot.config import EvolutionConfig, OrchestratorConfig, WorkerConfig  # noqa: E402


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def network_config():
    return SMALL_NETWORK


@pytest.fixture
def evolution_config() -> EvolutionConfig:
    return EvolutionConfig(population_size=6, elite_count=1, seed=3)


@pytest.fixture
def worker_config() -> WorkerConfig:
    return WorkerConfig(
        pool_capacity=3,
        provision_timeout_s=0.2,
        ready_poll_interval_s=0.01,
        max_consecutive_failures=3,
        recovery_delay_s=0.0,
    )


@pytest.fixture
def control_plane() -> FakeControlPlane:
    return FakeControlPlane()


@pytest.fixture
def channel() -> ScriptedChannel:
    return ScriptedChannel()


@pytest.fixture
def config(tmp_path: Path) -> OrchestratorConfig:
    return make_config(tmp_path)
