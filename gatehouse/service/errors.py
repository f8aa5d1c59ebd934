from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions.

    Each subclass carries a stable ``error_code`` for whatever transport sits in
    front of the service, and ``retryable`` tells the caller whether repeating
    the same call may succeed. Messages are safe to show to end users.
    """

    error_code: str = "server_error"
    default_message: str = "internal error"
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        retryable: Optional[bool] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if retryable is not None:
            self.retryable = retryable
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed. Subclasses never say why."""
    error_code = "unauthenticated"
    default_message = "authentication failed"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"
    default_message = "email and password don't match"


class InvalidProviderTokenError(AuthenticationError):
    error_code = "invalid_provider_token"
    default_message = "invalid provider token"


class InvalidAuthTokenError(AuthenticationError):
    error_code = "invalid_auth_token"
    default_message = "invalid or expired auth token"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "invalid_refresh_token"
    default_message = "invalid or expired refresh token"


class UnauthorizedError(ServiceError):
    """The actor may not perform this operation."""
    error_code = "unauthorized"
    default_message = "unauthorized"


class ValidationError(ServiceError):
    """A field failed validation; ``field`` names it."""

    error_code = "validation_error"
    default_message = "invalid request"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        field: Optional[str] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        detail = dict(detail or {})
        if field is not None:
            detail.setdefault("field", field)
        super().__init__(message, detail=detail, error_code=error_code)
        self.field = field


class InvalidVerifyCodeError(ValidationError):
    error_code = "invalid_verify_code"
    default_message = "invalid email verification code"

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message, field="code")


class ConflictError(ServiceError):
    error_code = "conflict"
    default_message = "conflict"


class DuplicateEmailError(ConflictError):
    error_code = "duplicate_email"
    default_message = "email already registered"


class RateLimitedError(ServiceError):
    error_code = "rate_limited"
    default_message = "too many attempts"
    retryable = True


class StoreUnavailableError(ServiceError):
    """The identity store did not answer in time. Safe to retry."""
    error_code = "store_unavailable"
    default_message = "identity store unavailable"
    retryable = True


class StoreError(ServiceError):
    error_code = "store_error"
    default_message = "identity store error"


class ProviderNotConfiguredError(ServiceError):
    """A provider was used without a registry entry. Configuration bug."""
    error_code = "provider_not_configured"
    default_message = "provider not configured"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidProviderTokenError",
    "InvalidAuthTokenError",
    "InvalidRefreshTokenError",
    "UnauthorizedError",
    "ValidationError",
    "InvalidVerifyCodeError",
    "ConflictError",
    "DuplicateEmailError",
    "RateLimitedError",
    "StoreUnavailableError",
    "StoreError",
    "ProviderNotConfiguredError",
]
