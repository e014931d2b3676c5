# file: app/errors.py
from __future__ import annotations
from typing import Any, Dict, Optional


class PipelineError(RuntimeError):
    """Base error carrying a machine-checkable reason code."""

    code = "pipeline_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details


class InvalidQueryError(PipelineError):
    code = "invalid_query"


class InvalidCandidatesError(PipelineError):
    """The generation payload holds no usable candidate list."""

    code = "invalid_candidate_shape"

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message, details={"raw": raw})
        self.raw = raw


class NoValidCandidatesError(PipelineError):
    code = "no_valid_candidates"


class QuotaExceeded(PipelineError):
    code = "daily_quota_exceeded"

    def __init__(self, sent: int, limit: int):
        super().__init__(
            f"Daily email limit reached ({sent}/{limit}). Try again tomorrow.",
            details={"sent": sent, "daily_limit": limit},
        )
        self.sent = sent
        self.limit = limit


class RemoteServiceError(PipelineError):
    """Non-success answer from a remote dependency; `status` drives retry classification."""

    code = "remote_service_error"

    def __init__(self, message: str, status: Optional[int] = None, payload: Any = None):
        super().__init__(message, details={"status": status, "payload": payload})
        self.status = status
        self.payload = payload


class GenerationError(PipelineError):
    code = "generation_failed"

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message, details={"raw": raw})
        self.raw = raw


class RunCancelled(PipelineError):
    code = "cancelled"


class RunStateError(PipelineError):
    """Illegal transition on a stored run or supplier."""

    code = "invalid_state"


class NotFoundError(PipelineError):
    code = "not_found"


def to_payload(exc: BaseException) -> Dict[str, Any]:
    """Structured, caller-visible form of an error (never a traceback)."""
    if isinstance(exc, PipelineError):
        return {"error": exc.message, "code": exc.code, "details": exc.details}
    return {"error": str(exc) or exc.__class__.__name__, "code": "internal_error", "details": None}
