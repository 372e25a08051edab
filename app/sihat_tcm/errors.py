"""Typed failures raised by the diagnosis session pipeline."""

from __future__ import annotations

from typing import Any


class SessionPipelineError(Exception):
    code = "pipeline_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.details,
        }


class ConfigurationError(SessionPipelineError):
    code = "configuration_error"


class ValidationError(SessionPipelineError):
    """Stage input is missing or invalid. The session is left untouched."""

    code = "validation_error"
    http_status = 400
    retryable = True

    def __init__(self, message: str, fields: list[str], **details: Any):
        super().__init__(message, fields=list(fields), **details)
        self.fields = list(fields)


class NotFound(SessionPipelineError):
    code = "not_found"
    http_status = 404


class SessionNotFound(NotFound):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} not found", session_id=session_id)
        self.session_id = session_id


class StageNotFound(NotFound):
    code = "stage_not_found"

    def __init__(self, ordinal: int):
        super().__init__(f"No stage at ordinal {ordinal}", ordinal=ordinal)
        self.ordinal = ordinal


class SessionClosed(SessionPipelineError):
    code = "session_closed"
    http_status = 409

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Session {session_id} is {status}", session_id=session_id, status=status)
        self.session_id = session_id
        self.status = status


class ConcurrentModification(SessionPipelineError):
    code = "concurrent_modification"
    http_status = 409
    retryable = True

    def __init__(self, session_id: str, expected_version: int | None, actual_version: int | None):
        super().__init__(
            f"Session {session_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            session_id=session_id,
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.session_id = session_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class PersistenceError(SessionPipelineError):
    code = "persistence_error"
    http_status = 500
    retryable = True


class AIUnavailable(SessionPipelineError):
    code = "ai_unavailable"
    http_status = 503
    retryable = True


class ProviderError(Exception):
    """Raised by inference clients when the provider rejects or fails a call."""


class AllTiersExhausted(Exception):
    def __init__(self, failures: list[Any]):
        tiers = ", ".join(f"{f.tier_id}:{f.error_kind}" for f in failures) or "none"
        super().__init__(f"All model tiers failed ({tiers})")
        self.failures = list(failures)
