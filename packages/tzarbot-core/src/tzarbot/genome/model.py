"""Network genome: dense topology plus a flat float32 weight vector."""

from __future__ import annotations

import math
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

import numpy as np

from tzarbot.config import NetworkConfig


class ActivationType(str, Enum):
    RELU = "relu"
    TANH = "tanh"
    LEAKY_RELU = "leaky_relu"
    SIGMOID = "sigmoid"
    SOFTMAX = "softmax"
    LINEAR = "linear"


HIDDEN_ACTIVATIONS = (
    ActivationType.RELU,
    ActivationType.TANH,
    ActivationType.LEAKY_RELU,
    ActivationType.SIGMOID,
)


@dataclass(frozen=True)
class LayerConfig:
    """One dense hidden layer."""

    neuron_count: int
    activation: ActivationType = ActivationType.RELU
    dropout_rate: float = 0.0

    def is_valid(self, max_dropout: float = 1.0) -> bool:
        return self.neuron_count >= 1 and 0.0 <= self.dropout_rate <= max_dropout


@dataclass(frozen=True)
class NetworkLayout:
    """Fixed input width and output heads shared by every genome in a run."""

    input_size: int = 512
    mouse_head_size: int = 2
    action_head_size: int = 30

    @classmethod
    def from_config(cls, config: NetworkConfig) -> NetworkLayout:
        return cls(
            input_size=config.input_size,
            mouse_head_size=config.mouse_head_size,
            action_head_size=config.action_head_size,
        )

    def layer_shapes(self, hidden_layers: Sequence[LayerConfig]) -> list[tuple[int, int]]:
        """(fan_in, fan_out) per weight block: hidden layers, then mouse and action heads.

        Each block is stored as ``fan_in * fan_out`` row-major weights
        followed by ``fan_out`` biases. Both heads read from the last
        hidden layer.
        """
        shapes: list[tuple[int, int]] = []
        previous = self.input_size
        for layer in hidden_layers:
            shapes.append((previous, layer.neuron_count))
            previous = layer.neuron_count
        shapes.append((previous, self.mouse_head_size))
        shapes.append((previous, self.action_head_size))
        return shapes

    def weight_count(self, hidden_layers: Sequence[LayerConfig]) -> int:
        return sum(fan_in * fan_out + fan_out for fan_in, fan_out in self.layer_shapes(hidden_layers))


def _frozen_weights(weights: np.ndarray | Sequence[float]) -> np.ndarray:
    array = np.array(weights, dtype=np.float32).reshape(-1)
    array.flags.writeable = False
    return array


@dataclass(frozen=True, eq=False)
class NetworkGenome:
    """Immutable candidate network. Identity is ``id``."""

    hidden_layers: tuple[LayerConfig, ...]
    weights: np.ndarray
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    generation: int = 0
    parent_ids: tuple[str, ...] = ()
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        object.__setattr__(self, "hidden_layers", tuple(self.hidden_layers))
        object.__setattr__(self, "weights", _frozen_weights(self.weights))
        object.__setattr__(self, "parent_ids", tuple(self.parent_ids))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NetworkGenome):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    @property
    def parameter_count(self) -> int:
        return int(self.weights.size)

    @property
    def hidden_sizes(self) -> list[int]:
        return [layer.neuron_count for layer in self.hidden_layers]

    def same_topology(self, other: NetworkGenome) -> bool:
        return self.hidden_sizes == other.hidden_sizes

    def is_valid(self, layout: NetworkLayout, max_dropout: float = 1.0) -> bool:
        """Layer configs are sane, weight count matches topology, no NaN/Inf."""
        if not self.hidden_layers:
            return False
        if not all(layer.is_valid(max_dropout) for layer in self.hidden_layers):
            return False
        if self.weights.size != layout.weight_count(self.hidden_layers):
            return False
        return bool(np.isfinite(self.weights).all())

    def derive(
        self,
        weights: np.ndarray,
        generation: int,
        parent_ids: Sequence[str],
        hidden_layers: Sequence[LayerConfig] | None = None,
    ) -> NetworkGenome:
        """A new genome (fresh id) built from this one."""
        return NetworkGenome(
            hidden_layers=tuple(hidden_layers if hidden_layers is not None else self.hidden_layers),
            weights=weights,
            generation=generation,
            parent_ids=tuple(parent_ids),
        )

    @classmethod
    def create_random(
        cls,
        hidden_sizes: Sequence[int],
        rng: np.random.Generator,
        layout: NetworkLayout | None = None,
        generation: int = 0,
        activation: ActivationType = ActivationType.RELU,
    ) -> NetworkGenome:
        """Xavier-normal weights, zero biases."""
        layout = layout or NetworkLayout()
        hidden = tuple(LayerConfig(neuron_count=n, activation=activation) for n in hidden_sizes)
        return cls(hidden_layers=hidden, weights=random_weights(layout, hidden, rng), generation=generation)


def random_weights(
    layout: NetworkLayout, hidden_layers: Sequence[LayerConfig], rng: np.random.Generator
) -> np.ndarray:
    blocks: list[np.ndarray] = []
    for fan_in, fan_out in layout.layer_shapes(hidden_layers):
        std = math.sqrt(2.0 / (fan_in + fan_out))
        blocks.append(rng.normal(0.0, std, size=fan_in * fan_out).astype(np.float32))
        blocks.append(np.zeros(fan_out, dtype=np.float32))
    return np.concatenate(blocks)


def split_blocks(
    layout: NetworkLayout, hidden_layers: Sequence[LayerConfig], weights: np.ndarray
) -> list[tuple[np.ndarray, np.ndarray]]:
    """Slice a flat weight vector into (matrix[fan_in, fan_out], bias) pairs."""
    blocks = []
    offset = 0
    for fan_in, fan_out in layout.layer_shapes(hidden_layers):
        matrix = weights[offset:offset + fan_in * fan_out].reshape(fan_in, fan_out)
        offset += fan_in * fan_out
        bias = weights[offset:offset + fan_out]
        offset += fan_out
        blocks.append((matrix, bias))
    return blocks


def join_blocks(blocks: Sequence[tuple[np.ndarray, np.ndarray]]) -> np.ndarray:
    parts: list[np.ndarray] = []
    for matrix, bias in blocks:
        parts.append(np.asarray(matrix, dtype=np.float32).reshape(-1))
        parts.append(np.asarray(bias, dtype=np.float32))
    return np.concatenate(parts)
