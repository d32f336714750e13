"""Genome serialization with integrity checking.

A serialized genome is a sealed JSON envelope (see ``tzarbot.integrity``)
whose weights are base64-encoded little-endian float32 bytes. The format is
opaque to the rest of the system: callers only use ``serialize`` /
``deserialize`` / ``payload_checksum``.
"""

from __future__ import annotations

import base64
import binascii
from datetime import datetime
from typing import Any

import numpy as np
from pydantic import BaseModel, Field, ValidationError

from tzarbot.errors import CorruptPayloadError
from tzarbot.genome.model import ActivationType, LayerConfig, NetworkGenome
from tzarbot.integrity import seal, sha256_hex, unseal

FORMAT_VERSION = 1
_WEIGHT_DTYPE = np.dtype("<f4")
_TOLERANCE = 1e-7


class LayerEnvelope(BaseModel):
    neuron_count: int = Field(ge=1)
    activation: ActivationType
    dropout_rate: float = Field(ge=0.0, le=1.0)


class GenomeEnvelope(BaseModel):
    """Wire/checkpoint form of a NetworkGenome."""
    format_version: int = FORMAT_VERSION
    id: str
    generation: int = Field(ge=0)
    hidden_layers: list[LayerEnvelope] = Field(min_length=1)
    parent_ids: list[str] = Field(default_factory=list)
    created_at: datetime
    weight_count: int = Field(ge=0)
    weights: str

    @classmethod
    def from_genome(cls, genome: NetworkGenome) -> GenomeEnvelope:
        raw = np.asarray(genome.weights, dtype=_WEIGHT_DTYPE).tobytes()
        return cls(
            id=genome.id,
            generation=genome.generation,
            hidden_layers=[
                LayerEnvelope(
                    neuron_count=layer.neuron_count,
                    activation=layer.activation,
                    dropout_rate=layer.dropout_rate,
                )
                for layer in genome.hidden_layers
            ],
            parent_ids=list(genome.parent_ids),
            created_at=genome.created_at,
            weight_count=genome.parameter_count,
            weights=base64.b64encode(raw).decode("ascii"),
        )

    def to_genome(self) -> NetworkGenome:
        if self.format_version != FORMAT_VERSION:
            raise CorruptPayloadError(f"unsupported genome format version {self.format_version}")
        try:
            raw = base64.b64decode(self.weights, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise CorruptPayloadError(f"genome {self.id} weights are not base64: {exc}") from exc
        if len(raw) != self.weight_count * _WEIGHT_DTYPE.itemsize:
            raise CorruptPayloadError(
                f"genome {self.id} declares {self.weight_count} weights but carries {len(raw)} bytes"
            )
        return NetworkGenome(
            id=self.id,
            generation=self.generation,
            hidden_layers=tuple(
                LayerConfig(
                    neuron_count=layer.neuron_count,
                    activation=layer.activation,
                    dropout_rate=layer.dropout_rate,
                )
                for layer in self.hidden_layers
            ),
            weights=np.frombuffer(raw, dtype=_WEIGHT_DTYPE).astype(np.float32),
            parent_ids=tuple(self.parent_ids),
            created_at=self.created_at,
        )


def serialize(genome: NetworkGenome) -> bytes:
    return seal(GenomeEnvelope.from_genome(genome).model_dump(mode="json"))


def deserialize(payload: bytes) -> NetworkGenome:
    """Decode a payload produced by ``serialize``; raises CorruptPayloadError."""
    body = unseal(payload)
    return envelope_from_dict(body).to_genome()


def envelope_from_dict(body: dict[str, Any]) -> GenomeEnvelope:
    try:
        return GenomeEnvelope.model_validate(body)
    except ValidationError as exc:
        raise CorruptPayloadError(f"genome envelope failed validation: {exc}") from exc


def payload_checksum(payload: bytes) -> str:
    """SHA-256 of a serialized genome, used to verify transfer to a worker."""
    return sha256_hex(payload)


def validate_round_trip(genome: NetworkGenome) -> bool:
    """Serialize then deserialize and compare within float tolerance."""
    try:
        restored = deserialize(serialize(genome))
    except CorruptPayloadError:
        return False

    if restored.id != genome.id or restored.generation != genome.generation:
        return False
    if len(restored.hidden_layers) != len(genome.hidden_layers):
        return False
    for original, copy in zip(genome.hidden_layers, restored.hidden_layers):
        if original.neuron_count != copy.neuron_count or original.activation != copy.activation:
            return False
        if abs(original.dropout_rate - copy.dropout_rate) > _TOLERANCE:
            return False
    if restored.weights.shape != genome.weights.shape:
        return False
    return bool(np.all(np.abs(restored.weights - genome.weights) <= _TOLERANCE))
