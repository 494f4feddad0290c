"""
Error taxonomy for ingestion and automation.

Every error carries the HTTP status it maps to, so routers can let them
propagate and the application-level handler renders a JSON body.
"""
from typing import Any, Dict, Optional


class ConvertOSError(Exception):
    """
    Base exception for all domain errors.

    Attributes:
        message: human readable reason (sent to the caller)
        status_code: HTTP status the error maps to
        error_code: stable machine readable code
        context: extra fields merged into the JSON response
    """

    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            **self.context,
        }


class AuthenticationError(ConvertOSError):
    """Bad or missing signature, unknown or inactive connection."""
    status_code = 401


class ValidationError(ConvertOSError):
    """Missing fields, disallowed action type, batch-size overflow."""
    status_code = 400


class NotFoundError(ConvertOSError):
    status_code = 404


class ConflictError(ConvertOSError):
    """
    Conflicting state. Duplicate idempotency keys are resolved as success
    by the ingestor and never surface as this error.
    """
    status_code = 409


class StaleDataError(ConvertOSError):
    """Freshness precondition failed; blocks the whole batch."""
    status_code = 412

    def __init__(self, message: str, *, last_synced_at: Optional[str] = None, minutes_since_sync: Optional[float] = None):
        super().__init__(
            message,
            error_code="DATA_STALE",
            context={
                "data_freshness": "stale",
                "last_synced": last_synced_at,
                "minutes_since_sync": minutes_since_sync,
            },
        )
        self.last_synced_at = last_synced_at


class ExternalServiceError(ConvertOSError):
    """Remote platform call failed. Recorded per item, never aborts a batch."""
    status_code = 502


class PersistenceError(ConvertOSError):
    """Store unreachable. Fatal for the current request."""
    status_code = 500
