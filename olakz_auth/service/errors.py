from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each class carries an HTTP ``status_code`` and a stable, upper-case
    ``error_code`` that clients can branch on. Callers can distinguish
    "retry with a fresh credential" (the token and code errors below) from a
    system failure (``ServerError`` / ``ServiceUnavailable``).
    """

    status_code: int = 400
    error_code: str = "BAD_REQUEST"

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class Unauthorized(ServiceError):
    """Missing or bad credential (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidSignature(Unauthorized):
    """Token signature does not verify or the algorithm is not accepted."""
    error_code = "INVALID_TOKEN"


class MalformedToken(Unauthorized):
    """Token is not a structurally valid token of the expected kind."""
    error_code = "INVALID_TOKEN"


class ExpiredToken(Unauthorized):
    """Token is past its expiry."""
    error_code = "TOKEN_EXPIRED"


class InvalidRefreshToken(Unauthorized):
    """Refresh token is unknown, consumed, expired or mis-signed."""
    error_code = "INVALID_REFRESH_TOKEN"


class InvalidProviderToken(Unauthorized):
    """Google or Apple identity token failed verification."""
    error_code = "INVALID_PROVIDER_TOKEN"


class CodeExpired(ValidationError):
    error_code = "OTP_EXPIRED"


class CodeInvalid(ValidationError):
    error_code = "OTP_INVALID"


class CodeAlreadyUsed(ValidationError):
    error_code = "OTP_ALREADY_USED"


class Forbidden(ServiceError):
    """Access denied for the caller's active role (403)."""
    status_code = 403
    error_code = "FORBIDDEN"


class RoleNotAssigned(Forbidden):
    """Requested role is not among the account's assigned roles."""
    error_code = "ROLE_NOT_ASSIGNED"


class NotFound(ServiceError):
    status_code = 404
    error_code = "NOT_FOUND"


class Conflict(ServiceError):
    """Resource conflict, e.g., duplicate email or identity (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimited(ServiceError):
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"


class ServiceUnavailable(ServiceError):
    """A dependency (provider keys, SMTP, store) cannot be reached (503)."""
    status_code = 503
    error_code = "SERVICE_UNAVAILABLE"


class ServerError(ServiceError):
    status_code = 500
    error_code = "INTERNAL_SERVER_ERROR"


__all__ = [
    "ServiceError",
    "ValidationError",
    "Unauthorized",
    "InvalidSignature",
    "MalformedToken",
    "ExpiredToken",
    "InvalidRefreshToken",
    "InvalidProviderToken",
    "CodeExpired",
    "CodeInvalid",
    "CodeAlreadyUsed",
    "Forbidden",
    "RoleNotAssigned",
    "NotFound",
    "Conflict",
    "RateLimited",
    "ServiceUnavailable",
    "ServerError",
]
