from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``;
    only the API error handlers turn these into responses. Messages on the
    authentication family are deliberately uniform so callers cannot tell a
    wrong password from an unknown account, or a malformed code from a wrong
    one.
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


class WeakPasswordError(ValidationError):
    error_code = "weak_password"


class InvalidCodeError(ValidationError):
    """An MFA, setup or step-up code did not verify (400)."""
    error_code = "invalid_code"

    def __init__(self, message: str = "invalid code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class VerificationExpiredError(ValidationError):
    """Reset or verification token unknown, used, or past its expiry (400)."""
    error_code = "verification_expired"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenRevokedError(AuthenticationError):
    error_code = "token_revoked"

    def __init__(self, message: str = "token has been revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class InsufficientPermissionsError(ForbiddenError):
    error_code = "insufficient_permissions"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailExistsError(ConflictError):
    error_code = "email_exists"


class AccountLockedError(ServiceError):
    """Login refused while the account is locked (423)."""
    status_code = 423
    error_code = "account_locked"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ServiceUnavailableError(ServiceError):
    """A storage or delivery dependency failed or timed out; retryable (503)."""
    status_code = 503
    error_code = "service_unavailable"

    def __init__(self, message: str = "service temporarily unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "WeakPasswordError",
    "InvalidCodeError",
    "VerificationExpiredError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "TokenRevokedError",
    "ForbiddenError",
    "InsufficientPermissionsError",
    "NotFoundError",
    "ConflictError",
    "EmailExistsError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
    "ServiceUnavailableError",
]
