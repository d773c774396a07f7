from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Subclasses pin the HTTP status and the stable ``error_code`` that the
    error envelope carries:
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - rate_limited (429)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail


class AuthenticationError(ServiceError):
    """Missing session or rejected credentials (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """The operation is switched off by configuration (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Email already registered (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Too many attempts for one subject (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after_seconds: int) -> None:
        super().__init__(message, detail={"retry_after_seconds": retry_after_seconds})
        self.retry_after_seconds = retry_after_seconds


class MaintenanceFailure(Exception):
    """Best-effort session upkeep that did not complete.

    These never reach a client; they are logged under ``event``.
    """

    event = "session_maintenance_failed"

    def __init__(self, lookup_id: str, reason: str) -> None:
        super().__init__(f"{self.event}: {reason}")
        self.lookup_id = lookup_id
        self.reason = reason


class RenewalFailed(MaintenanceFailure):
    event = "session_renewal_failed"


class DeleteOnExpiryFailed(MaintenanceFailure):
    event = "session_delete_on_expiry_failed"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "RateLimitedError",
    "MaintenanceFailure",
    "RenewalFailed",
    "DeleteOnExpiryFailed",
]
