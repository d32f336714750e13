"""Checksummed JSON envelopes used for genomes, worker reports and checkpoints.

A sealed payload is ``{"checksum": <sha256 hex>, "body": {...}}`` where the
checksum covers the canonical (sorted-key, compact) JSON encoding of ``body``.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

from tzarbot.errors import CorruptPayloadError


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_json(body: Any) -> bytes:
    """Encode ``body`` deterministically so checksums are reproducible."""
    return json.dumps(body, sort_keys=True, separators=(",", ":"), allow_nan=False).encode("utf-8")


def seal(body: dict[str, Any]) -> bytes:
    """Wrap ``body`` with a checksum of its canonical encoding."""
    return canonical_json({"checksum": sha256_hex(canonical_json(body)), "body": body})


def unseal(payload: bytes) -> dict[str, Any]:
    """Verify and unwrap a sealed payload.

    Raises CorruptPayloadError if the payload is not valid JSON, is missing
    the envelope keys, or its checksum does not match the body.
    """
    try:
        envelope = json.loads(payload)
    except (UnicodeDecodeError, ValueError) as exc:
        raise CorruptPayloadError(f"payload is not valid JSON: {exc}") from exc

    if not isinstance(envelope, dict) or "checksum" not in envelope or "body" not in envelope:
        raise CorruptPayloadError("payload is missing checksum envelope")

    body = envelope["body"]
    if not isinstance(body, dict):
        raise CorruptPayloadError("payload body must be an object")

    try:
        expected = sha256_hex(canonical_json(body))
    except ValueError as exc:
        raise CorruptPayloadError(f"payload body is not canonical JSON: {exc}") from exc
    if expected != envelope["checksum"]:
        raise CorruptPayloadError("payload checksum mismatch")
    return body
