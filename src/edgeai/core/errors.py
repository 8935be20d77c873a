"""Outcome kinds, exception types and their HTTP mapping.

Every inference call ends in an :class:`InferenceOutcome` carrying one of the
:class:`OutcomeKind` values.  Model and session faults are converted into
outcomes close to where they happen so that the chat UI always receives a
message; only request decoding problems and unexpected faults surface as HTTP
errors.  :data:`STATUS_CODE_MAP` is the one place that decides which status
code each kind is served with.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

NO_MODEL_AVAILABLE = "No LLM model available"
NO_JSON_DATA = "No JSON data found"

# Native runtimes append a multi-line source location dump to error messages.
_TRACE_MARKER = "=== Source Location Trace"


class OutcomeKind(str, Enum):
    OK = "ok"
    PARSE_ERROR = "parse_error"
    MODEL_UNAVAILABLE = "model_unavailable"
    INIT_ERROR = "init_error"
    INFERENCE_ERROR = "inference_error"
    TIMEOUT = "timeout"
    INTERNAL_ERROR = "internal_error"


# Soft failures are served as 200 so the UI can render them as a reply.
STATUS_CODE_MAP: dict[OutcomeKind, int] = {
    OutcomeKind.OK: 200,
    OutcomeKind.PARSE_ERROR: 400,
    OutcomeKind.MODEL_UNAVAILABLE: 200,
    OutcomeKind.INIT_ERROR: 200,
    OutcomeKind.INFERENCE_ERROR: 200,
    OutcomeKind.TIMEOUT: 200,
    OutcomeKind.INTERNAL_ERROR: 500,
}


@dataclass(frozen=True)
class InferenceOutcome:
    """Result of one logical inference call.

    Attributes:
        kind: How the call ended.
        text: Accumulated model output, or the message describing the failure.
    """

    kind: OutcomeKind
    text: str

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.OK

    @property
    def status_code(self) -> int:
        return STATUS_CODE_MAP[self.kind]

    @classmethod
    def success(cls, text: str) -> InferenceOutcome:
        return cls(OutcomeKind.OK, text)

    @classmethod
    def model_unavailable(cls) -> InferenceOutcome:
        return cls(OutcomeKind.MODEL_UNAVAILABLE, NO_MODEL_AVAILABLE)

    @classmethod
    def init_error(cls, message: str) -> InferenceOutcome:
        return cls(OutcomeKind.INIT_ERROR, message)

    @classmethod
    def inference_error(cls, message: str) -> InferenceOutcome:
        return cls(OutcomeKind.INFERENCE_ERROR, f"Error during inference: {message}")

    @classmethod
    def timed_out(cls, partial_text: str) -> InferenceOutcome:
        return cls(OutcomeKind.TIMEOUT, partial_text)


class EdgeAIError(Exception):
    """Base exception for gateway errors.

    Subclasses set :attr:`kind`, which selects the HTTP status through
    :data:`STATUS_CODE_MAP` when the exception reaches the router.
    """

    kind: OutcomeKind = OutcomeKind.INTERNAL_ERROR

    def __init__(self, message: str, model_name: str | None = None):
        self.message = message
        self.model_name = model_name
        super().__init__(message)

    @property
    def status_code(self) -> int:
        return STATUS_CODE_MAP[self.kind]

    def to_outcome(self) -> InferenceOutcome:
        return InferenceOutcome(self.kind, self.message)


class RequestParseError(EdgeAIError):
    """Raised when a request body, field, or embedded image cannot be decoded."""

    kind = OutcomeKind.PARSE_ERROR


class SessionInitError(EdgeAIError):
    """Raised when the engine or its session cannot be created."""

    kind = OutcomeKind.INIT_ERROR


def clean_up_error_message(message: str) -> str:
    """Strip the native source-location dump from an engine error message.

    Args:
        message: Raw exception text reported by the engine binding.

    Returns:
        The human-readable part of the message, or ``"Unknown error"`` when
        nothing is left.
    """
    cleaned = message.split(_TRACE_MARKER, 1)[0].strip()
    return cleaned or "Unknown error"
