from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered into the error envelope:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotVerifiedError(AuthenticationError):
    def __init__(self, message: str = "account not verified", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TwoFactorRequiredError(AuthenticationError):
    """Password accepted but a TOTP code is still needed."""

    def __init__(self, message: str = "two-factor code required", **kwargs) -> None:
        kwargs.setdefault("detail", {"two_factor_required": True})
        super().__init__(message, **kwargs)


class TokenExpiredError(AuthenticationError):
    def __init__(self, message: str = "access token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenNotFoundError(AuthenticationError):
    """Refresh token unknown, already rotated, or revoked."""

    def __init__(self, message: str = "refresh token not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class RefreshTokenExpiredError(AuthenticationError):
    def __init__(self, message: str = "refresh token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserNotFoundError(AuthenticationError):
    def __init__(self, message: str = "user not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionExpiredError(AuthenticationError):
    """Access token expired and could not be refreshed (401)."""

    def __init__(self, message: str = "session expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountBlockedError(ForbiddenError):
    def __init__(self, message: str = "account blocked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class PermissionDeniedError(ForbiddenError):
    def __init__(self, message: str = "permission denied", **kwargs) -> None:
        super().__init__(message, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateEmailError(ConflictError):
    def __init__(self, message: str = "email already registered", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "NotVerifiedError",
    "TwoFactorRequiredError",
    "TokenExpiredError",
    "TokenInvalidError",
    "RefreshTokenNotFoundError",
    "RefreshTokenExpiredError",
    "UserNotFoundError",
    "SessionExpiredError",
    "ForbiddenError",
    "AccountBlockedError",
    "PermissionDeniedError",
    "NotFoundError",
    "ConflictError",
    "DuplicateEmailError",
    "ServerError",
]
