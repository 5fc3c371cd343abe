"""Authentication API endpoints."""

from fastapi import APIRouter, Depends, Request, status

from authledger.api.dependencies import (
    get_auth_service,
    get_current_user,
    get_request_metadata,
    mark_audited,
)
from authledger.models.audit import RequestMetadata
from authledger.models.auth import (
    AuthData,
    ChangePasswordRequest,
    ForgotPasswordRequest,
    IdentityAuthRequest,
    RefreshTokenRequest,
    ResetPasswordRequest,
    SigninRequest,
    SignupRequest,
    UpdateProfileRequest,
    UserData,
    VerifyEmailRequest,
)
from authledger.models.common import ApiResponse
from authledger.models.user import User, UserSummary
from authledger.services.auth_service import AuthService

router = APIRouter(prefix="/auth", tags=["Auth"])


@router.post(
    "/signup",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[AuthData],
    response_model_exclude_none=True,
)
async def signup(
    body: SignupRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    metadata: RequestMetadata = Depends(get_request_metadata),
) -> ApiResponse[AuthData]:
    """Register a new account with email and password.

    Raises:
        ConflictError 409: If the email is already registered
    """
    data = await auth.signup(body, metadata)
    mark_audited(request)
    return ApiResponse(message="User registered successfully", data=data)


@router.post("/signin", response_model=ApiResponse[AuthData], response_model_exclude_none=True)
async def signin(
    body: SigninRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    metadata: RequestMetadata = Depends(get_request_metadata),
) -> ApiResponse[AuthData]:
    """Sign in with email and password.

    Raises:
        UnauthorizedError 401: If credentials are invalid or account is disabled
        AccountLockedError 423: If the account is locked out
    """
    data = await auth.signin(body, metadata)
    mark_audited(request)
    return ApiResponse(message="Login successful", data=data)


@router.post("/identity", response_model=ApiResponse[AuthData], response_model_exclude_none=True)
@router.post(
    "/google",
    response_model=ApiResponse[AuthData],
    response_model_exclude_none=True,
    include_in_schema=False,
)
async def identity_signin(
    body: IdentityAuthRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    metadata: RequestMetadata = Depends(get_request_metadata),
) -> ApiResponse[AuthData]:
    """Sign in or sign up with an external identity token."""
    data = await auth.identity_signin(body.token, metadata)
    mark_audited(request)
    message = "Account created successfully" if data.is_new_user else "Login successful"
    return ApiResponse(message=message, data=data)


@router.post("/forgot-password", response_model=ApiResponse[None], response_model_exclude_none=True)
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    metadata: RequestMetadata = Depends(get_request_metadata),
) -> ApiResponse[None]:
    """Request a password reset link. The response never reveals whether the email exists."""
    message = await auth.forgot_password(body.email, metadata)
    mark_audited(request)
    return ApiResponse(message=message)


@router.post("/reset-password", response_model=ApiResponse[None], response_model_exclude_none=True)
async def reset_password(
    body: ResetPasswordRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    metadata: RequestMetadata = Depends(get_request_metadata),
) -> ApiResponse[None]:
    """Set a new password using a reset token.

    Raises:
        InvalidOrExpiredTokenError 400: If the token is unknown, used or expired
    """
    await auth.reset_password(body.token, body.password, metadata)
    mark_audited(request)
    return ApiResponse(message="Password reset successful")


@router.post("/verify-email", response_model=ApiResponse[UserData], response_model_exclude_none=True)
async def verify_email(
    body: VerifyEmailRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    metadata: RequestMetadata = Depends(get_request_metadata),
) -> ApiResponse[UserData]:
    user = await auth.verify_email(body.token, metadata)
    mark_audited(request)
    return ApiResponse(message="Email verified successfully", data=UserData(user=user))


@router.post("/refresh-token", response_model=ApiResponse[AuthData], response_model_exclude_none=True)
async def refresh_token(
    body: RefreshTokenRequest,
    request: Request,
    auth: AuthService = Depends(get_auth_service),
) -> ApiResponse[AuthData]:
    """Exchange a refresh token for a new token pair.

    Raises:
        UnauthorizedError 401: If the refresh token is invalid or the user is inactive
    """
    data = await auth.refresh(body.refresh_token)
    mark_audited(request)
    return ApiResponse(message="Token refreshed successfully", data=data)


@router.get("/me", response_model=ApiResponse[UserData], response_model_exclude_none=True)
@router.get(
    "/profile",
    response_model=ApiResponse[UserData],
    response_model_exclude_none=True,
)
async def get_profile(
    current_user: User = Depends(get_current_user),
) -> ApiResponse[UserData]:
    """Return the authenticated user's profile."""
    return ApiResponse(data=UserData(user=UserSummary.from_user(current_user)))


@router.put("/profile", response_model=ApiResponse[UserData], response_model_exclude_none=True)
async def update_profile(
    body: UpdateProfileRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
    metadata: RequestMetadata = Depends(get_request_metadata),
) -> ApiResponse[UserData]:
    """Update name and/or avatar of the authenticated user."""
    user = await auth.update_profile(current_user, body, metadata)
    mark_audited(request)
    return ApiResponse(message="Profile updated successfully", data=UserData(user=user))


@router.post("/change-password", response_model=ApiResponse[None], response_model_exclude_none=True)
async def change_password(
    body: ChangePasswordRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
    metadata: RequestMetadata = Depends(get_request_metadata),
) -> ApiResponse[None]:
    """Change the authenticated user's password.

    Raises:
        InvalidCurrentPasswordError 400: If the current password is wrong
    """
    await auth.change_password(current_user, body, metadata)
    mark_audited(request)
    return ApiResponse(message="Password changed successfully")


@router.post("/logout", response_model=ApiResponse[None], response_model_exclude_none=True)
async def logout(
    request: Request,
    current_user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
    metadata: RequestMetadata = Depends(get_request_metadata),
) -> ApiResponse[None]:
    """Sign out. Tokens are stateless; the client discards them."""
    auth.logout(current_user, metadata)
    mark_audited(request)
    return ApiResponse(message="Logout successful")
