"""Request/response protocol between the orchestrator and worker VMs."""

from __future__ import annotations

from tzarbot.communication.channel import RemoteChannel
from tzarbot.communication.communicator import Communicator
from tzarbot.communication.wire import EvaluationRequest, EvaluationResult

__all__ = ["Communicator", "EvaluationRequest", "EvaluationResult", "RemoteChannel"]
