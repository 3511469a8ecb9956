from __future__ import annotations

from typing import Dict, Optional


class ServiceError(Exception):
    """An auth-flow failure that the API turns into an error envelope.

    ``status_code`` and ``error_code`` are fixed per subclass. ``detail`` is
    passed through as the envelope's ``details``; ``retry_after`` (seconds)
    becomes a ``Retry-After`` header for lockouts and attempt budgets.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[dict] = None,
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail or {}
        self.retry_after = retry_after

    @property
    def headers(self) -> Optional[Dict[str, str]]:
        if self.retry_after is None:
            return None
        return {"Retry-After": str(max(0, int(self.retry_after)))}


class ValidationError(ServiceError):
    """Bad input, wrong OTP or reset token, wrong current password."""

    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Account exists but is deactivated."""

    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Email or phone already registered."""

    status_code = 409
    error_code = "conflict"


class LockedError(ServiceError):
    status_code = 423
    error_code = "locked"


class RateLimitedError(ServiceError):
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Delivery or storage failure the client cannot fix."""

    status_code = 500
    error_code = "server_error"
