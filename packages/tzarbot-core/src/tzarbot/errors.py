"""Error taxonomy shared by the worker, communication and training layers."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Why an evaluation or lifecycle operation failed."""
    UNREACHABLE = "unreachable"              # transport failure or deadline exceeded
    CORRUPT = "corrupt"                      # payload failed integrity validation
    INVALID_STATE = "invalid_state"          # illegal lifecycle transition requested
    PROVISION_FAILURE = "provision_failure"  # VM never became ready
    EXHAUSTED_RETRIES = "exhausted_retries"  # escalation past policy limits


class TzarBotError(Exception):
    """Base class for orchestrator errors."""

    kind: ErrorKind | None = None


class InvalidStateError(TzarBotError):
    """A state machine was asked for a transition it does not allow."""

    kind = ErrorKind.INVALID_STATE


class ProvisionFailureError(TzarBotError):
    """A VM did not report ready before the provisioning timeout."""

    kind = ErrorKind.PROVISION_FAILURE


class TransportError(TzarBotError):
    """The remote execution channel could not deliver a request or response."""

    kind = ErrorKind.UNREACHABLE


class CorruptPayloadError(TzarBotError):
    """A payload failed checksum or structural validation."""

    kind = ErrorKind.CORRUPT


class ExhaustedRetriesError(TzarBotError):
    """An operation kept failing after every configured retry."""

    kind = ErrorKind.EXHAUSTED_RETRIES


class CheckpointError(TzarBotError):
    """A checkpoint could not be written or read back."""


class ConfigurationError(TzarBotError):
    """Externally supplied configuration is out of range or malformed."""


class ArchiveError(TzarBotError):
    """The SQLite generation archive could not be read or written."""
