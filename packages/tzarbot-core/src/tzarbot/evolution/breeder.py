"""Produces the next population from a fully evaluated one."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass

import numpy as np
import structlog

from tzarbot.communication.wire import EvaluationResult
from tzarbot.config import CrossoverMethod, EvolutionConfig, NetworkConfig
from tzarbot.evolution.selection import ParentSelector, Scored, build_selector, select_elites
from tzarbot.genome.model import NetworkGenome, NetworkLayout
from tzarbot.genome.operators import (
    arithmetic_crossover,
    clamp_weights,
    mutate_structure,
    mutate_weights,
    uniform_crossover,
)

logger = structlog.get_logger()


@dataclass
class Offspring:
    """The next population plus the results carried over with its elites."""

    population: list[NetworkGenome]
    carried_results: dict[str, EvaluationResult]
    elite_ids: list[str]


class Breeder:
    """Elitism, selection and variation in one step.

    Elites come first and keep their identity and result, so they are not
    evaluated again. Every other slot is a new genome stamped with
    ``next_generation``.
    """

    def __init__(
        self,
        config: EvolutionConfig,
        network: NetworkConfig,
        selector: ParentSelector | None = None,
    ) -> None:
        self._config = config
        self._network = network
        self._layout = NetworkLayout.from_config(network)
        self._selector = selector or build_selector(config)

    def initial_population(self, rng: np.random.Generator) -> list[NetworkGenome]:
        return [
            NetworkGenome.create_random(self._network.hidden_layers, rng, self._layout, generation=0)
            for _ in range(self._config.population_size)
        ]

    def breed(
        self,
        population: Sequence[NetworkGenome],
        results: Mapping[str, EvaluationResult],
        next_generation: int,
        rng: np.random.Generator,
        failure_fitness: float = 0.0,
    ) -> Offspring:
        scored = [
            Scored(
                genome=genome,
                fitness=failure_fitness if results[genome.id].failed else results[genome.id].fitness,
                failed=results[genome.id].failed,
            )
            for genome in population
        ]
        elites = select_elites(scored, self._config.elite_count)
        next_population = [e.genome for e in elites]
        carried = {e.genome.id: results[e.genome.id] for e in elites}

        while len(next_population) < self._config.population_size:
            next_population.append(self._make_child(scored, next_generation, rng))

        logger.debug(
            "population_bred",
            generation=next_generation,
            elites=len(elites),
            offspring=len(next_population) - len(elites),
        )
        return Offspring(
            population=next_population,
            carried_results=carried,
            elite_ids=[e.genome.id for e in elites],
        )

    def _make_child(self, scored: Sequence[Scored], generation: int, rng: np.random.Generator) -> NetworkGenome:
        config = self._config
        first = self._selector.select(scored, rng)
        parents = [first.genome.id]

        if rng.random() < config.crossover_rate:
            second = self._selector.select(scored, rng)
            if config.crossover_method is CrossoverMethod.UNIFORM:
                layers, weights = uniform_crossover(
                    first.genome,
                    first.fitness,
                    second.genome,
                    second.fitness,
                    rng,
                    self._layout,
                    config.crossover_alpha,
                    config.inherit_from_better_parent,
                )
            else:
                layers, weights = arithmetic_crossover(
                    first.genome, first.fitness, second.genome, second.fitness, config.crossover_alpha
                )
            if second.genome.id != first.genome.id:
                parents.append(second.genome.id)
        else:
            layers, weights = first.genome.hidden_layers, np.array(first.genome.weights)

        if rng.random() < config.mutation_rate:
            weights = mutate_weights(weights, rng, config)

        if rng.random() < config.structure_mutation_rate:
            layers, weights = mutate_structure(layers, weights, rng, self._layout, self._network, config)

        return first.genome.derive(
            clamp_weights(weights, config.min_weight, config.max_weight),
            generation,
            parents,
            hidden_layers=layers,
        )
