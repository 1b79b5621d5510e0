from typing import Any, Dict, Optional


class CaptureError(Exception):
    """
    Base class for every error the capture gateway reports to a caller.

    Each subclass pins the HTTP status and a machine-readable error_code, so the
    FastAPI exception handler can map any CaptureError without a lookup table.
    """

    status_code: int = 500
    error_code: str = "INTERNAL"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_body(self) -> Dict[str, Any]:
        return {"detail": self.message, "error_code": self.error_code}


class BadRequestError(CaptureError):
    status_code = 400
    error_code = "BAD_REQUEST"


class ClockSkewError(CaptureError):
    # Stale or future-dated request; reported as a malformed request.
    status_code = 400
    error_code = "CLOCK_SKEW"


class BadSignatureError(CaptureError):
    status_code = 401
    error_code = "BAD_SIGNATURE"


class MissingOrganizationError(CaptureError):
    status_code = 401
    error_code = "MISSING_ORG"


class UnknownOrganizationError(CaptureError):
    status_code = 403
    error_code = "UNKNOWN_ORG"


class AlreadyProcessingError(CaptureError):
    status_code = 409
    error_code = "ALREADY_PROCESSING"


class TransientError(CaptureError):
    """
    Store or downstream collaborator unavailable.
    Never cached: the lease is released so a retry with the same key can proceed.
    """

    status_code = 503
    error_code = "TRANSIENT"


class DeadlineExceededError(CaptureError):
    # Caller may retry with the same key; the abandoned worker still releases its lease.
    status_code = 504
    error_code = "DEADLINE_EXCEEDED"


class InternalError(CaptureError):
    status_code = 500
    error_code = "INTERNAL"
