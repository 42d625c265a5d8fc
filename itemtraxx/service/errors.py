from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable error categories shared by the server envelope and the client."""

    UNAUTHENTICATED = "unauthorized"
    SESSION_REVOKED = "session_revoked"
    ACCESS_DENIED = "forbidden"
    TENANT_DISABLED = "tenant_disabled"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    VALIDATION = "validation_error"
    UNAVAILABLE = "service_unavailable"
    TRANSPORT = "transport_error"
    SERVER = "server_error"


# One message per kind; only VALIDATION may surface backend text.
USER_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.UNAUTHENTICATED: "Please sign in again.",
    ErrorKind.SESSION_REVOKED: "This device was signed out. Please sign in again.",
    ErrorKind.ACCESS_DENIED: "You do not have access to this area.",
    ErrorKind.TENANT_DISABLED: "Tenant disabled",
    ErrorKind.NOT_FOUND: "The requested item was not found.",
    ErrorKind.CONFLICT: "That change conflicts with existing data.",
    ErrorKind.RATE_LIMITED: "Too many requests. Please wait and try again.",
    ErrorKind.TIMEOUT: "The request timed out. Please try again.",
    ErrorKind.VALIDATION: "The request was invalid.",
    ErrorKind.UNAVAILABLE: "The service is temporarily unavailable.",
    ErrorKind.TRANSPORT: "Network error. Check your connection and try again.",
    ErrorKind.SERVER: "Something went wrong. Please try again.",
}


def user_message(kind: ErrorKind, raw: Optional[str] = None) -> str:
    """Return the stable message for ``kind``; raw text is kept only for validation."""
    if kind is ErrorKind.VALIDATION and raw:
        return raw
    return USER_MESSAGES[kind]


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass defines an HTTP ``status_code`` and an ``error_code`` drawn
    from :class:`ErrorKind`:
    - unauthorized / session_revoked (401)
    - forbidden / tenant_disabled (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = ErrorKind.VALIDATION.value

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
    error_code = ErrorKind.VALIDATION.value


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = ErrorKind.UNAUTHENTICATED.value


class InvalidTokenError(AuthenticationError):
    """Bearer token is malformed, expired or signed with the wrong key (401).

    Clients treat this as the signal to refresh credentials and replay once.
    """

    def __init__(self, message: str = "Invalid JWT", **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.detail.setdefault("reason", "invalid_token")


class SessionRevokedError(AuthenticationError):
    """The caller's device session was revoked from another device (401)."""
    error_code = ErrorKind.SESSION_REVOKED.value


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = ErrorKind.ACCESS_DENIED.value


class TenantDisabledError(ForbiddenError):
    """The caller's tenant is suspended (403)."""
    error_code = ErrorKind.TENANT_DISABLED.value

    def __init__(self, message: str = "Tenant disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = ErrorKind.NOT_FOUND.value


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = ErrorKind.CONFLICT.value


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = ErrorKind.RATE_LIMITED.value

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        retry_after_seconds: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.retry_after_seconds = retry_after_seconds
        if retry_after_seconds is not None:
            self.detail.setdefault("retry_after_seconds", retry_after_seconds)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = ErrorKind.SERVER.value


class RateLimitCheckFailedError(ServerError):
    """The limiter itself failed; requests are refused rather than admitted."""

    def __init__(self, message: str = "Rate limit check failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServiceUnavailableError(ServiceError):
    """Maintenance mode, kill switch, or a required dependency is down (503)."""
    status_code = 503
    error_code = ErrorKind.UNAVAILABLE.value


__all__ = [
    "ErrorKind",
    "USER_MESSAGES",
    "user_message",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "SessionRevokedError",
    "ForbiddenError",
    "TenantDisabledError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "RateLimitCheckFailedError",
    "ServiceUnavailableError",
]
