"""Variation operators: weight mutation, structure mutation, crossover."""

from __future__ import annotations

import numpy as np
import structlog

from tzarbot.config import EvolutionConfig, NetworkConfig
from tzarbot.genome.model import (
    HIDDEN_ACTIVATIONS,
    LayerConfig,
    NetworkGenome,
    NetworkLayout,
    join_blocks,
    random_weights,
    split_blocks,
)

logger = structlog.get_logger()

# Reset draws are uniform(-1, 1) scaled by this factor.
_RESET_SCALE = 2.0


def clamp_weights(weights: np.ndarray, min_weight: float, max_weight: float) -> np.ndarray:
    """Clip into bounds and zero out NaN/Inf."""
    cleaned = np.nan_to_num(np.asarray(weights, dtype=np.float32), nan=0.0, posinf=0.0, neginf=0.0)
    return np.clip(cleaned, min_weight, max_weight).astype(np.float32)


def mutate_weights(weights: np.ndarray, rng: np.random.Generator, config: EvolutionConfig) -> np.ndarray:
    """Perturb a random subset of weights.

    Each weight is touched with probability ``perturbation_rate``. A touched
    weight is re-drawn with probability ``reset_rate``, otherwise it gets
    Gaussian noise scaled by ``mutation_strength``.
    """
    mutated = np.array(weights, dtype=np.float32)
    touched = rng.random(mutated.size) < config.perturbation_rate
    reset = touched & (rng.random(mutated.size) < config.reset_rate)
    perturb = touched & ~reset

    mutated[perturb] += (rng.normal(0.0, 1.0, size=int(perturb.sum())) * config.mutation_strength).astype(np.float32)
    mutated[reset] = (rng.uniform(-1.0, 1.0, size=int(reset.sum())) * _RESET_SCALE).astype(np.float32)
    return clamp_weights(mutated, config.min_weight, config.max_weight)


def _transplant(
    layout: NetworkLayout,
    old_layers: tuple[LayerConfig, ...],
    old_weights: np.ndarray,
    new_layers: tuple[LayerConfig, ...],
    rng: np.random.Generator,
) -> np.ndarray:
    """Fresh weights for ``new_layers`` with the overlapping block of each old layer copied in."""
    fresh = split_blocks(layout, new_layers, random_weights(layout, new_layers, rng))
    old = split_blocks(layout, old_layers, old_weights)
    blocks = []
    for (new_matrix, new_bias), (old_matrix, old_bias) in zip(fresh, old):
        matrix = np.array(new_matrix)
        bias = np.array(new_bias)
        rows = min(matrix.shape[0], old_matrix.shape[0])
        cols = min(matrix.shape[1], old_matrix.shape[1])
        matrix[:rows, :cols] = old_matrix[:rows, :cols]
        bias[:cols] = old_bias[:cols]
        blocks.append((matrix, bias))
    return join_blocks(blocks)


def mutate_structure(
    hidden_layers: tuple[LayerConfig, ...],
    weights: np.ndarray,
    rng: np.random.Generator,
    layout: NetworkLayout,
    network: NetworkConfig,
    config: EvolutionConfig,
) -> tuple[tuple[LayerConfig, ...], np.ndarray]:
    """Change one hidden layer's width, activation or dropout.

    Layer count is fixed; only the existing layers are reshaped. Returns
    the new layer tuple and the transplanted weight vector.
    """
    layers = list(hidden_layers)
    index = int(rng.integers(len(layers)))
    target = layers[index]
    choice = int(rng.integers(3))

    if choice == 0:
        delta = int(rng.integers(-config.neuron_delta, config.neuron_delta + 1))
        count = int(np.clip(target.neuron_count + delta, network.min_neurons, network.max_neurons))
        layers[index] = LayerConfig(count, target.activation, target.dropout_rate)
    elif choice == 1:
        activation = HIDDEN_ACTIVATIONS[int(rng.integers(len(HIDDEN_ACTIVATIONS)))]
        layers[index] = LayerConfig(target.neuron_count, activation, target.dropout_rate)
    else:
        dropout = float(rng.uniform(0.0, network.max_dropout))
        layers[index] = LayerConfig(target.neuron_count, target.activation, dropout)

    new_layers = tuple(layers)
    if [layer.neuron_count for layer in new_layers] == [layer.neuron_count for layer in hidden_layers]:
        return new_layers, np.array(weights)

    logger.debug(
        "structure_mutated",
        layer=index,
        old_neurons=target.neuron_count,
        new_neurons=new_layers[index].neuron_count,
    )
    return new_layers, _transplant(layout, hidden_layers, weights, new_layers, rng)


def arithmetic_crossover(
    first: NetworkGenome,
    first_fitness: float,
    second: NetworkGenome,
    second_fitness: float,
    alpha: float,
) -> tuple[tuple[LayerConfig, ...], np.ndarray]:
    """Arithmetic blend for matching topologies; otherwise inherit from the fitter parent."""
    if first.same_topology(second):
        return first.hidden_layers, _blend(first.weights, second.weights, alpha)

    fitter = first if first_fitness >= second_fitness else second
    return fitter.hidden_layers, np.array(fitter.weights)


def uniform_crossover(
    first: NetworkGenome,
    first_fitness: float,
    second: NetworkGenome,
    second_fitness: float,
    rng: np.random.Generator,
    layout: NetworkLayout,
    alpha: float = 0.5,
    inherit_from_better: bool = True,
) -> tuple[tuple[LayerConfig, ...], np.ndarray]:
    """Mix two parents layer by layer.

    The child has as many hidden layers as the fitter parent (a random
    parent when ``inherit_from_better`` is off). Each layer both parents
    have is taken from either one at random; the rest come from the parent
    that has them.

    Matching topologies blend weights with ``alpha``. Otherwise every child
    block starts from fresh weights and the region each parent's block
    covers is copied in, picking per weight at random where both do.
    """
    if inherit_from_better:
        source = first if first_fitness >= second_fitness else second
    else:
        source = first if rng.random() < 0.5 else second

    layers = []
    for index, layer in enumerate(source.hidden_layers):
        if index < len(first.hidden_layers) and index < len(second.hidden_layers):
            layer = (first if rng.random() < 0.5 else second).hidden_layers[index]
        layers.append(layer)
    child_layers = tuple(layers)

    if first.same_topology(second):
        return child_layers, _blend(first.weights, second.weights, alpha)

    fresh = split_blocks(layout, child_layers, random_weights(layout, child_layers, rng))
    first_blocks = _aligned_blocks(layout, first, len(child_layers))
    second_blocks = _aligned_blocks(layout, second, len(child_layers))
    blocks = []
    for (matrix, bias), first_block, second_block in zip(fresh, first_blocks, second_blocks):
        first_matrix, first_bias = first_block or (None, None)
        second_matrix, second_bias = second_block or (None, None)
        matrix = np.array(matrix)
        bias = np.array(bias)
        _overlay(matrix, first_matrix, second_matrix, rng)
        _overlay(bias, first_bias, second_bias, rng)
        blocks.append((matrix, bias))

    logger.debug(
        "uniform_crossover_transplanted",
        first_hidden=first.hidden_sizes,
        second_hidden=second.hidden_sizes,
        child_hidden=[layer.neuron_count for layer in child_layers],
    )
    return child_layers, join_blocks(blocks)


def _blend(first: np.ndarray, second: np.ndarray, alpha: float) -> np.ndarray:
    blended = alpha * first.astype(np.float32) + (1.0 - alpha) * second.astype(np.float32)
    return blended.astype(np.float32)


def _aligned_blocks(
    layout: NetworkLayout, parent: NetworkGenome, hidden_count: int
) -> list[tuple[np.ndarray, np.ndarray] | None]:
    """Parent blocks lined up with a child of ``hidden_count`` hidden layers; heads stay last."""
    blocks = split_blocks(layout, parent.hidden_layers, parent.weights)
    parent_hidden = len(parent.hidden_layers)
    hidden: list[tuple[np.ndarray, np.ndarray] | None] = [
        blocks[index] if index < parent_hidden else None for index in range(hidden_count)
    ]
    return hidden + list(blocks[parent_hidden:])


def _overlay(
    target: np.ndarray, first: np.ndarray | None, second: np.ndarray | None, rng: np.random.Generator
) -> None:
    """Copy into ``target`` the leading region it shares with each parent array."""
    for parent in (first, second):
        if parent is not None:
            region = tuple(slice(0, min(t, p)) for t, p in zip(target.shape, parent.shape))
            target[region] = parent[region]
    if first is not None and second is not None:
        shared = tuple(slice(0, min(t, a, b)) for t, a, b in zip(target.shape, first.shape, second.shape))
        pick_first = rng.random(target[shared].shape) < 0.5
        target[shared] = np.where(pick_first, first[shared], second[shared])
