from __future__ import annotations

import math
from datetime import timedelta
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - validation_error (400)
    - policy_violation (400)
    - unauthorized (401)
    - session_expired (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - locked_out (423)
    - rate_limited (429)
    - server_error (500)
    - transport_failure (503)
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
        self.detail = detail or {}


def ceil_seconds(remaining: timedelta) -> int:
    return max(0, math.ceil(remaining.total_seconds()))


class ValidationError(ServiceError):
    """Malformed input, rejected before any policy engine runs (400)."""
    status_code = 400
    error_code = "validation_error"


class PolicyViolation(ServiceError):
    """A user-correctable password policy breach (400).

    ``reason`` is one of ``min_age``, ``reuse`` or ``expired``. For
    ``min_age`` the remaining wait is exposed as ``remaining_seconds``.
    """

    status_code = 400
    error_code = "policy_violation"

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        remaining: Optional[timedelta] = None,
    ) -> None:
        detail: dict = {"reason": reason}
        self.reason = reason
        self.remaining = remaining
        self.remaining_seconds = ceil_seconds(remaining) if remaining is not None else None
        if self.remaining_seconds is not None:
            detail["remaining_seconds"] = self.remaining_seconds
        super().__init__(message, detail=detail)


class AuthFailure(ServiceError):
    """Bad credential or 2FA code (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionInvalid(AuthFailure):
    """The presented session token is missing or superseded (401)."""
    error_code = "session_expired"


class ForbiddenError(ServiceError):
    """Authenticated, but the step is not permitted yet (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class LockedOut(ServiceError):
    """Authentication refused for the rest of the lockout window (423)."""

    status_code = 423
    error_code = "locked_out"

    def __init__(self, remaining: timedelta) -> None:
        self.remaining = remaining
        self.remaining_seconds = ceil_seconds(remaining)
        super().__init__(
            f"Account locked. Try again in {self.remaining_seconds} second(s).",
            detail={"remaining_seconds": self.remaining_seconds},
        )


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TransportFailure(ServiceError):
    """A backing store or outbound call failed or timed out (503)."""
    status_code = 503
    error_code = "transport_failure"


__all__ = [
    "ServiceError",
    "ValidationError",
    "PolicyViolation",
    "AuthFailure",
    "SessionInvalid",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "LockedOut",
    "RateLimitedError",
    "ServerError",
    "TransportFailure",
    "ceil_seconds",
]
