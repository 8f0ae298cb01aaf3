from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from sessionforge.storage.errors import StoreUnavailable

if TYPE_CHECKING:
    from sessionforge.service.security_events import SecurityEvent


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - unauthorized (401)
    - forbidden (403)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class DuplicateIdentifier(ServiceError):
    """Login identifier already registered (409)."""
    status_code = 409
    error_code = "conflict"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentials(AuthenticationError):
    """Unknown identifier, wrong password or locked principal.

    The three causes share one message so callers cannot enumerate accounts.
    """

    def __init__(self) -> None:
        super().__init__("invalid credentials")


class InvalidToken(AuthenticationError):
    """Token is unknown, malformed or carries a bad signature (401)."""

    def __init__(self, message: str = "invalid token", *, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail=detail)


class TokenExpired(AuthenticationError):
    """Token is past its expiry; the client must log in again (401)."""

    def __init__(self, message: str = "token expired") -> None:
        super().__init__(message)


class TokenReuseDetected(AuthenticationError):
    """A rotated or revoked refresh token was presented again (401).

    The whole chain has already been revoked by the time this is raised.
    """

    def __init__(self, event: "SecurityEvent") -> None:
        super().__init__("refresh token reuse detected")
        self.event = event


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "DuplicateIdentifier",
    "AuthenticationError",
    "InvalidCredentials",
    "InvalidToken",
    "TokenExpired",
    "TokenReuseDetected",
    "ForbiddenError",
    "RateLimitedError",
    "ServerError",
    "StoreUnavailable",
]
