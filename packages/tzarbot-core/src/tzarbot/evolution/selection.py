"""Parent selection strategies and elitism."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

import numpy as np

from tzarbot.config import EvolutionConfig, SelectionStrategy
from tzarbot.genome.model import NetworkGenome


@dataclass(frozen=True)
class Scored:
    """A genome with the fitness used for selection."""

    genome: NetworkGenome
    fitness: float
    failed: bool = False


class ParentSelector(Protocol):
    def select(self, scored: Sequence[Scored], rng: np.random.Generator) -> Scored: ...


def ranked(scored: Sequence[Scored]) -> list[Scored]:
    """Best first; equal fitness keeps population order."""
    return sorted(scored, key=lambda s: -s.fitness)


def select_elites(scored: Sequence[Scored], count: int) -> list[Scored]:
    """Top ``count`` genomes by fitness, ignoring failed evaluations."""
    if count <= 0:
        return []
    return ranked([s for s in scored if not s.failed])[:count]


class TournamentSelector:
    """Best of ``size`` contestants drawn without replacement."""

    def __init__(self, size: int = 3) -> None:
        self._size = size

    def select(self, scored: Sequence[Scored], rng: np.random.Generator) -> Scored:
        k = min(self._size, len(scored))
        indices = sorted(int(i) for i in rng.choice(len(scored), size=k, replace=False))
        return max((scored[i] for i in indices), key=lambda s: s.fitness)


class FitnessProportionateSelector:
    """Roulette wheel over fitness shifted so the worst genome has a small share."""

    _FLOOR = 1e-6

    def select(self, scored: Sequence[Scored], rng: np.random.Generator) -> Scored:
        fitness = np.array([s.fitness for s in scored], dtype=np.float64)
        weights = fitness - fitness.min() + self._FLOOR
        return scored[int(rng.choice(len(scored), p=weights / weights.sum()))]


class RankSelector:
    """Linear ranking: the best of n gets weight n, the worst weight 1."""

    def select(self, scored: Sequence[Scored], rng: np.random.Generator) -> Scored:
        order = ranked(scored)
        n = len(order)
        weights = np.arange(n, 0, -1, dtype=np.float64)
        return order[int(rng.choice(n, p=weights / weights.sum()))]


def build_selector(config: EvolutionConfig) -> ParentSelector:
    if config.selection is SelectionStrategy.TOURNAMENT:
        return TournamentSelector(config.tournament_size)
    if config.selection is SelectionStrategy.FITNESS_PROPORTIONATE:
        return FitnessProportionateSelector()
    return RankSelector()
