"""Protocol for the remote execution channel that reaches a worker VM."""

from __future__ import annotations

from typing import Protocol


class RemoteChannel(Protocol):
    """Transport between the orchestrator and one named worker.

    Implementations raise TransportError when the worker cannot be
    reached. Delivery is at-least-once; a worker handed a new request
    discards any request it was still running.
    """

    async def push_genome(self, worker_name: str, payload: bytes, checksum: str) -> None: ...
    async def request_evaluation(self, worker_name: str, request: bytes) -> bytes: ...
