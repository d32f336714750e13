"""Genome model, codec and variation operators."""

from __future__ import annotations

from tzarbot.genome.codec import deserialize, payload_checksum, serialize, validate_round_trip
from tzarbot.genome.model import ActivationType, LayerConfig, NetworkGenome, NetworkLayout

__all__ = [
    "ActivationType",
    "LayerConfig",
    "NetworkGenome",
    "NetworkLayout",
    "deserialize",
    "payload_checksum",
    "serialize",
    "validate_round_trip",
]
