"""Domain error taxonomy mapped to HTTP responses.

Every error carries an HTTP ``status_code`` and a stable machine-readable
``code``. Handlers in ``authledger.api.errors`` turn them into the JSON error
envelope.
"""

from typing import Any, Optional


class AppError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(AppError):
    status_code = 400
    code = "VALIDATION_ERROR"


class ConflictError(AppError):
    status_code = 409
    code = "CONFLICT"


class UnauthorizedError(AppError):
    status_code = 401
    code = "UNAUTHORIZED"


class TokenExpiredError(UnauthorizedError):
    code = "TOKEN_EXPIRED"


class InvalidTokenError(UnauthorizedError):
    code = "INVALID_TOKEN"


class AccountDeactivatedError(UnauthorizedError):
    code = "ACCOUNT_DEACTIVATED"

    def __init__(self, message: str = "Account is deactivated", details=None) -> None:
        super().__init__(message, details)


class AccountLockedError(AppError):
    status_code = 423
    code = "ACCOUNT_LOCKED"

    def __init__(
        self,
        message: str = "Account is temporarily locked due to multiple failed login attempts",
        details=None,
    ) -> None:
        super().__init__(message, details)


class ForbiddenError(AppError):
    status_code = 403
    code = "FORBIDDEN"


class NotFoundError(AppError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidOrExpiredTokenError(AppError):
    """Password-reset or email-verification token is unknown or expired."""

    status_code = 400
    code = "INVALID_OR_EXPIRED_TOKEN"


class InvalidCurrentPasswordError(AppError):
    status_code = 400
    code = "INVALID_CURRENT_PASSWORD"

    def __init__(self, message: str = "Current password is incorrect", details=None) -> None:
        super().__init__(message, details)


class InvalidIdentityTokenError(AppError):
    """External identity token failed signature, issuer, audience or expiry checks."""

    status_code = 400
    code = "INVALID_IDENTITY_TOKEN"


class IdentityTokenExpiredError(InvalidIdentityTokenError):
    code = "IDENTITY_TOKEN_EXPIRED"


class IdentityAudienceMismatchError(InvalidIdentityTokenError):
    code = "IDENTITY_AUDIENCE_MISMATCH"


class ServiceUnavailableError(AppError):
    """A downstream collaborator (mail, identity provider) is not configured."""

    status_code = 500
    code = "SERVICE_UNAVAILABLE"


class InternalError(AppError):
    status_code = 500
    code = "INTERNAL_ERROR"


__all__ = [
    "AppError",
    "ValidationError",
    "ConflictError",
    "UnauthorizedError",
    "TokenExpiredError",
    "InvalidTokenError",
    "AccountDeactivatedError",
    "AccountLockedError",
    "ForbiddenError",
    "NotFoundError",
    "InvalidOrExpiredTokenError",
    "InvalidCurrentPasswordError",
    "InvalidIdentityTokenError",
    "IdentityTokenExpiredError",
    "IdentityAudienceMismatchError",
    "ServiceUnavailableError",
    "InternalError",
]
