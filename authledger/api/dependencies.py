"""FastAPI dependencies for authentication, authorization and service access."""

from typing import Optional

from fastapi import Depends, Request

from authledger.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    ForbiddenError,
    InvalidTokenError,
    UnauthorizedError,
)
from authledger.models.audit import RequestMetadata
from authledger.models.user import User
from authledger.repositories.base import InvalidIdentifierError
from authledger.services.audit_log_service import AuditLogService
from authledger.services.auth_service import AuthService
from authledger.services.credential_service import CredentialService
from authledger.services.token_service import TokenKind, TokenService


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth_service


def get_audit_log_service(request: Request) -> AuditLogService:
    return request.app.state.audit_log_service


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def request_metadata(request: Request, status_code: Optional[int] = None) -> RequestMetadata:
    """Capture the request context recorded alongside audit entries."""
    route = request.scope.get("route")
    return RequestMetadata(
        ip=client_ip(request),
        user_agent=request.headers.get("User-Agent"),
        route=getattr(route, "path", None) or request.url.path,
        method=request.method,
        status_code=status_code,
        request_id=getattr(request.state, "correlation_id", None),
    )


def get_request_metadata(request: Request) -> RequestMetadata:
    return request_metadata(request)


async def get_current_user(
    request: Request,
    tokens: TokenService = Depends(get_token_service),
) -> User:
    """Resolve the bearer access token to an active, unlocked user.

    The user is also stored on ``request.state.user`` for the audit interceptor.

    Raises:
        UnauthorizedError: Missing token, or user no longer exists
        TokenExpiredError / InvalidTokenError: Token failed verification
        AccountDeactivatedError: User disabled
        AccountLockedError: User locked out after failed signins
    """
    token = TokenService.extract_bearer(request.headers.get("Authorization"))
    if token is None:
        raise UnauthorizedError("Access token is required")

    claims = tokens.verify(token, TokenKind.ACCESS)

    users = request.app.state.user_repository
    try:
        user = await users.get_by_id(claims["sub"])
    except InvalidIdentifierError:
        raise InvalidTokenError("Invalid access token")

    if user is None:
        raise UnauthorizedError("User not found")
    if not user.is_active:
        raise AccountDeactivatedError()
    if CredentialService.is_locked(user):
        raise AccountLockedError()

    request.state.user = user
    return user


async def require_admin(
    current_user: User = Depends(get_current_user),
) -> User:
    """Require the current user to have the admin role.

    Raises:
        ForbiddenError: If user is not an admin
    """
    if not current_user.is_admin:
        raise ForbiddenError("Admin access required")
    return current_user


def mark_audited(request: Request) -> None:
    """Tell the interceptor this exchange already has a precise audit entry."""
    request.state.audit_recorded = True
