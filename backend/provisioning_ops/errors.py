"""
Structured error classes for the snapshot and change-analysis engine.

Taxonomy:
- ParseError: one record's payload could not be normalized. The record is
  skipped and counted; the scan continues.
- ConflictError: an analysis job was requested while one of the same kind
  is already running. Surfaced immediately, never queued or retried.
- StorageError: snapshot persistence unavailable. Transient; the next
  periodic capture retries the record naturally.
- ClassificationPolicyError: a tier has no rank mapping. The diff engine
  turns this into an "unknown" classification instead of failing.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for engine errors."""

    code = "engine_error"

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "error": self.code,
            "message": self.message,
            **self.context,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(message={self.message!r})"


class ParseError(EngineError):
    """Raised when a raw provisioning payload cannot be parsed at all."""

    code = "parse_error"

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message, record_id=record_id)
        self.record_id = record_id


class ConflictError(EngineError):
    """Raised when a job of the same kind is already running."""

    code = "analysis_already_running"

    def __init__(self, job_type: str, message: Optional[str] = None):
        super().__init__(
            message or f"Analysis '{job_type}' is already running",
            job_type=job_type,
        )
        self.job_type = job_type


class StorageError(EngineError):
    """
    Raised when the snapshot store cannot read or write.

    Always retryable by the caller.
    """

    code = "storage_unavailable"
    retryable = True

    def __init__(self, message: str, record_id: Optional[str] = None):
        super().__init__(message, record_id=record_id)
        self.record_id = record_id


class ClassificationPolicyError(EngineError):
    """Raised when a package tier has no rank in the configured tier order."""

    code = "unranked_tier"

    def __init__(self, tier: Optional[str]):
        super().__init__(f"No rank configured for tier '{tier}'", tier=tier)
        self.tier = tier


class InvalidJobTransition(EngineError):
    """Raised on a state machine transition the scheduler does not allow."""

    code = "invalid_job_transition"

    def __init__(self, job_type: str, current: str, target: str):
        super().__init__(
            f"Cannot move '{job_type}' from {current} to {target}",
            job_type=job_type,
            current=current,
            target=target,
        )


class RecordNotFoundError(EngineError):
    """Raised when a PS record or ghost account cannot be found."""

    code = "not_found"

    def __init__(self, identifier: str, kind: str = "record"):
        super().__init__(f"{kind.capitalize()} '{identifier}' not found", identifier=identifier)
        self.identifier = identifier
