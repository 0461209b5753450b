"""
Error taxonomy for the activity import pipeline.

Every error carries a stable ``code`` for API responses, the HTTP status the
router should answer with, and whether retrying later can succeed.
Retryable errors never reach the caller: the orchestrator turns them into a
paused run with a continuation token.
"""
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from fitlog.services.rate_limit import RateLimitState


class IngestError(Exception):
    """Base class for import pipeline errors."""

    code = "IMPORT_FAILED"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_detail(self) -> Dict[str, Any]:
        """Body for ``HTTPException(detail=...)``."""
        detail: Dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            detail["details"] = self.details
        return detail


# Request-level errors


class InvalidParameter(IngestError):
    code = "INVALID_PARAM"
    status_code = 400


class NotConnected(IngestError):
    code = "STRAVA_NOT_CONNECTED"
    status_code = 403


class ImportInProgress(IngestError):
    code = "IMPORT_IN_PROGRESS"
    status_code = 409


class CursorDecodeError(IngestError):
    """A continuation token is malformed, tampered with, or from another version."""

    code = "INVALID_CONTINUE_TOKEN"
    status_code = 400


# Fetch errors


class FetchTimeout(IngestError):
    code = "PROVIDER_TIMEOUT"
    status_code = 504
    retryable = True


class RateLimited(IngestError):
    code = "RATE_LIMITED"
    status_code = 429
    retryable = True

    def __init__(self, message: str, rate_limit: Optional["RateLimitState"] = None):
        super().__init__(message)
        self.rate_limit = rate_limit


class FetchFailed(IngestError):
    code = "PROVIDER_ERROR"
    status_code = 502

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = False):
        super().__init__(message, {"status": status} if status is not None else None)
        self.status = status
        self.retryable = retryable


class CredentialsInvalid(IngestError):
    code = "STRAVA_CREDENTIALS_INVALID"
    status_code = 403


class ProviderSchemaError(IngestError):
    code = "PROVIDER_SCHEMA_CHANGED"
    status_code = 502


# Per-record errors


class NormalizationError(IngestError):
    """One external record cannot be mapped to the canonical shape."""

    code = "NORMALIZATION_FAILED"
    status_code = 422


class ImportAborted(IngestError):
    """A run stopped on a structural error. Wraps the cause and the run id."""

    def __init__(self, cause: IngestError, run_id: Optional[str] = None):
        super().__init__(cause.message, cause.details)
        self.cause = cause
        self.run_id = run_id
        self.code = cause.code
        self.status_code = cause.status_code

    def to_detail(self) -> Dict[str, Any]:
        detail = super().to_detail()
        if self.run_id:
            detail["run_id"] = self.run_id
        return detail
