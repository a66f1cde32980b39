"""
Typed errors raised by the engine.

Validation and configuration errors are surfaced to the caller; infrastructure
errors (DurableWriteFailure) are retried internally by the batcher and only
escape once retries are exhausted.
"""

from typing import Any, Optional


class EngineError(Exception):
    """Base class for every error the engine reports."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": type(self).__name__, "detail": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(EngineError):
    """Malformed session identifier or event payload. Never retried."""
    status_code = 422


class SessionNotFound(EngineError):
    status_code = 404


class ExperimentNotFound(EngineError):
    status_code = 404


class NoVariantsAvailable(EngineError):
    """The experiment has no active variants; no assignment is created."""
    status_code = 409


class MergeConflict(EngineError):
    """Merge of a missing, already merged, or identical session."""
    status_code = 409


class DurableWriteFailure(EngineError):
    """Transient storage error while writing a batch."""
    status_code = 503
