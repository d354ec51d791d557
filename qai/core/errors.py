"""
qai.core.errors — Error taxonomy for the agent loop.

Transport and protocol errors end the running task in the ``Failed`` state.
Tool errors never do: the executor folds them into an observation that is
fed back to the model.
"""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    """Failure kinds reported by a ``Failed`` task outcome."""
    NETWORK_FAILURE = "NetworkFailure"
    PROTOCOL_MISMATCH = "ProtocolMismatch"
    HTTP_FAILURE = "HttpFailure"
    UNTERMINATED_TAG = "UnterminatedTag"
    CONFIGURATION = "Configuration"
    TOOL_PANIC = "ToolPanic"


class ToolFailureKind(StrEnum):
    NOT_FOUND = "NotFound"
    NOT_READABLE = "NotReadable"
    PERMISSION_DENIED = "PermissionDenied"
    AMBIGUOUS_MATCH = "AmbiguousMatch"
    NO_MATCH = "NoMatch"
    TIMEOUT = "Timeout"
    PROCESS_SPAWN_FAILURE = "ProcessSpawnFailure"
    INVALID_INPUT = "InvalidInput"
    UNKNOWN_TOOL = "UnknownTool"
    NETWORK_FAILURE = "NetworkFailure"
    EMPTY_RESULT = "EmptyResult"
    VCS_NOT_PRESENT = "VcsNotPresent"
    NOTHING_TO_COMMIT = "NothingToCommit"
    COMMAND_FAILED = "CommandFailed"


class QaiError(Exception):
    """Base error for all agent operations."""
    kind: ErrorKind = ErrorKind.PROTOCOL_MISMATCH

    def __init__(self, message: str = "") -> None:
        self.detail = message
        super().__init__(message)


class NetworkFailure(QaiError):
    """Connect/read timeout, DNS or TLS failure while talking to a provider."""
    kind = ErrorKind.NETWORK_FAILURE


class ProtocolMismatch(QaiError):
    """The provider answered with a shape we do not understand."""
    kind = ErrorKind.PROTOCOL_MISMATCH


class HttpFailure(QaiError):
    """The provider answered with an HTTP status >= 400."""
    kind = ErrorKind.HTTP_FAILURE

    def __init__(self, status: int, body: str = "") -> None:
        self.status = status
        self.body = body
        message = f"HTTP {status}"
        if body:
            message += f": {body[:500]}"
        super().__init__(message)


class UnterminatedTag(QaiError):
    """A structural tag was still open when the stream ended."""
    kind = ErrorKind.UNTERMINATED_TAG

    def __init__(self, tag: str) -> None:
        self.tag = tag
        super().__init__(f"<{tag}> was never closed before the stream ended")


class ConfigurationError(QaiError):
    """Missing API token, missing custom endpoint, unknown provider."""
    kind = ErrorKind.CONFIGURATION


class ToolFailure(QaiError):
    """Raised by a tool handler; recovered locally as a failed observation."""

    def __init__(self, kind: ToolFailureKind, detail: str) -> None:
        self.failure_kind = kind
        super().__init__(detail)

    def __str__(self) -> str:
        return f"{self.failure_kind.value}: {self.detail}"
