"""Auth orchestration: signup, signin, identity signin, password and profile flows.

Each operation records its own precise audit entry, so the request
interceptor leaves these exchanges alone.
"""

from datetime import datetime, timezone
from typing import Optional

import structlog

from authledger.config import Settings
from authledger.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    ConflictError,
    InvalidCurrentPasswordError,
    InvalidOrExpiredTokenError,
    ServiceUnavailableError,
    UnauthorizedError,
    ValidationError,
)
from authledger.models.audit import RequestMetadata
from authledger.models.auth import (
    AuthData,
    ChangePasswordRequest,
    SigninRequest,
    SignupRequest,
    UpdateProfileRequest,
)
from authledger.models.user import User, UserRole, UserSummary
from authledger.repositories.base import (
    DuplicateKeyError,
    InvalidIdentifierError,
    UserRepository,
    new_object_id,
)
from authledger.services.audit_recorder import AuditRecorder
from authledger.services.background import schedule_task
from authledger.services.credential_service import CredentialService, hash_token
from authledger.services.email_service import EmailService
from authledger.services.identity_service import IdentityVerifier
from authledger.services.token_service import TokenKind, TokenService

logger = structlog.get_logger(__name__)

USER_ENTITY = "User"
INVALID_CREDENTIALS = "Invalid email or password"
RESET_REQUESTED_MESSAGE = (
    "If a user with that email exists, a password reset link has been sent."
)


class AuthService:
    """Coordinates credentials, tokens, identity, email and audit for each auth flow."""

    def __init__(
        self,
        settings: Settings,
        users: UserRepository,
        credentials: CredentialService,
        tokens: TokenService,
        identity: IdentityVerifier,
        email: EmailService,
        recorder: AuditRecorder,
    ):
        self.settings = settings
        self.users = users
        self.credentials = credentials
        self.tokens = tokens
        self.identity = identity
        self.email = email
        self.recorder = recorder

    def _auth_data(self, user: User, is_new_user: Optional[bool] = None) -> AuthData:
        pair = self.tokens.issue_pair(user)
        return AuthData(
            user=UserSummary.from_user(user),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            is_new_user=is_new_user,
        )

    async def _send_verification_email(self, user: User, token: str) -> None:
        sent = await self.email.send_email_verification(user.email, token, user.name)
        if not sent:
            logger.warning("verification_email_not_sent", user_id=user.id)

    async def signup(self, request: SignupRequest, metadata: RequestMetadata) -> AuthData:
        """Register an email/password account.

        Raises:
            ConflictError: If the email is already registered
        """
        if await self.users.get_by_email(request.email) is not None:
            raise ConflictError("User already exists with this email")

        now = datetime.now(timezone.utc)
        verify_plain, verify_hash, verify_expires = self.credentials.generate_token(
            self.credentials.email_verification_ttl
        )
        candidate = User(
            id=new_object_id(),
            name=request.name,
            email=request.email,
            password_hash=await self.credentials.hash_password_async(request.password),
            role=UserRole.USER,
            email_verification_token_hash=verify_hash,
            email_verification_expires=verify_expires,
            created_at=now,
            updated_at=now,
        )
        try:
            user = await self.users.create(candidate)
        except DuplicateKeyError:
            raise ConflictError("User already exists with this email")

        logger.info("user_signed_up", user_id=user.id)
        if self.email.is_configured():
            schedule_task(
                self._send_verification_email(user, verify_plain), name="verification_email"
            )

        self.recorder.log_create(
            user.id,
            USER_ENTITY,
            user.id,
            data={"name": user.name, "email": user.email, "role": user.role.value},
            metadata=metadata,
            description="User registered",
        )
        return self._auth_data(user)

    async def signin(self, request: SigninRequest, metadata: RequestMetadata) -> AuthData:
        """Authenticate with email and password.

        Raises:
            UnauthorizedError: Unknown email or wrong password (same message for both)
            AccountLockedError: Too many recent failures
            AccountDeactivatedError: Account disabled
        """
        user = await self.users.get_by_email(request.email)
        if user is None:
            raise UnauthorizedError(INVALID_CREDENTIALS)

        if self.credentials.is_locked(user):
            logger.info("signin_rejected", user_id=user.id, reason="locked")
            raise AccountLockedError()

        if not user.is_active:
            raise AccountDeactivatedError()

        if not await self.credentials.verify_password(user, request.password):
            await self.credentials.increment_failed_attempts(user)
            logger.info("signin_rejected", user_id=user.id, reason="bad_password")
            raise UnauthorizedError(INVALID_CREDENTIALS)

        await self.credentials.reset_failed_attempts(user)
        user = await self.users.update(user.id, last_login=datetime.now(timezone.utc)) or user

        logger.info("user_signed_in", user_id=user.id)
        self.recorder.log_read(
            user.id, USER_ENTITY, user.id, metadata=metadata, description="User signed in"
        )
        return self._auth_data(user)

    async def identity_signin(self, identity_token: str, metadata: RequestMetadata) -> AuthData:
        """Sign in (or sign up) with an external identity token.

        Raises:
            ServiceUnavailableError: Identity provider not configured
            InvalidIdentityTokenError: Token failed verification
            AccountDeactivatedError: Matched account is disabled
        """
        identity = await self.identity.verify(identity_token)
        now = datetime.now(timezone.utc)

        user = await self.users.find_by_email_or_external_id(
            identity.email, identity.external_id
        )
        if user is None:
            try:
                user = await self.users.create(
                    User(
                        id=new_object_id(),
                        name=identity.name,
                        email=identity.email,
                        external_id=identity.external_id,
                        avatar=identity.avatar,
                        is_email_verified=identity.email_verified,
                        last_login=now,
                        created_at=now,
                        updated_at=now,
                    )
                )
            except DuplicateKeyError:
                raise ConflictError("User already exists with this email")

            logger.info("user_signed_up", user_id=user.id, via="identity")
            self.recorder.log_create(
                user.id,
                USER_ENTITY,
                user.id,
                data={
                    "name": user.name,
                    "email": user.email,
                    "role": user.role.value,
                    "provider": "google",
                },
                metadata=metadata,
                description="User registered via external identity",
            )
            return self._auth_data(user, is_new_user=True)

        if not user.is_active:
            raise AccountDeactivatedError()

        changes: dict = {"last_login": now}
        if not user.external_id:
            changes["external_id"] = identity.external_id
        if not user.avatar and identity.avatar:
            changes["avatar"] = identity.avatar
        if identity.email_verified and not user.is_email_verified:
            changes["is_email_verified"] = True
        user = await self.users.update(user.id, **changes) or user

        logger.info("user_signed_in", user_id=user.id, via="identity")
        self.recorder.log_read(
            user.id,
            USER_ENTITY,
            user.id,
            metadata=metadata,
            description="User signed in via external identity",
        )
        return self._auth_data(user, is_new_user=False)

    async def forgot_password(self, email: str, metadata: RequestMetadata) -> str:
        """Start a password reset.

        Returns the same message whether or not the address is registered.

        Raises:
            ServiceUnavailableError: Mail transport not configured
        """
        if not self.email.is_configured():
            raise ServiceUnavailableError("Email service is not configured")

        user = await self.users.get_by_email(email)
        if user is None or not user.is_active:
            return RESET_REQUESTED_MESSAGE

        plaintext = await self.credentials.create_password_reset_token(user)
        sent = await self.email.send_password_reset_email(user.email, plaintext, user.name)
        if not sent:
            await self.credentials.clear_password_reset_token(user)
            logger.error("password_reset_email_failed", user_id=user.id)
            return RESET_REQUESTED_MESSAGE

        self.recorder.log_update(
            user.id,
            USER_ENTITY,
            user.id,
            before={"passwordResetRequested": False},
            after={"passwordResetRequested": True},
            metadata=metadata,
            description="Password reset requested",
        )
        return RESET_REQUESTED_MESSAGE

    async def reset_password(
        self, token: str, new_password: str, metadata: RequestMetadata
    ) -> None:
        """Consume a reset token and set a new password. Tokens are single-use.

        The new hash is computed first; the token is then matched and cleared
        in one store operation, so concurrent resets with the same token
        succeed at most once.

        Raises:
            InvalidOrExpiredTokenError: Token unknown, used or expired
            AccountDeactivatedError: Account disabled
        """
        token_hash = hash_token(token)
        user = await self.users.get_by_password_reset_token(
            token_hash, datetime.now(timezone.utc)
        )
        if user is None:
            raise InvalidOrExpiredTokenError("Invalid or expired reset token")
        if not user.is_active:
            raise AccountDeactivatedError()

        password_hash = await self.credentials.hash_password_async(new_password)
        user = await self.users.consume_password_reset_token(
            token_hash,
            datetime.now(timezone.utc),
            password_hash=password_hash,
            failed_login_attempts=0,
            lock_until=None,
        )
        if user is None:
            raise InvalidOrExpiredTokenError("Invalid or expired reset token")

        logger.info("password_reset_completed", user_id=user.id)
        self.recorder.log_update(
            user.id,
            USER_ENTITY,
            user.id,
            before={"passwordReset": False},
            after={"passwordReset": True},
            metadata=metadata,
            description="Password reset completed",
        )

    async def verify_email(self, token: str, metadata: RequestMetadata) -> UserSummary:
        """Consume an email verification token.

        Raises:
            InvalidOrExpiredTokenError: Token unknown, used or expired
        """
        user = await self.users.consume_email_verification_token(
            hash_token(token), datetime.now(timezone.utc), is_email_verified=True
        )
        if user is None:
            raise InvalidOrExpiredTokenError("Invalid or expired verification token")

        self.recorder.log_update(
            user.id,
            USER_ENTITY,
            user.id,
            before={"emailVerified": False},
            after={"emailVerified": True},
            metadata=metadata,
            description="Email address verified",
        )
        return UserSummary.from_user(user)

    async def change_password(
        self, user: User, request: ChangePasswordRequest, metadata: RequestMetadata
    ) -> None:
        """Change the password of the authenticated user.

        Raises:
            InvalidCurrentPasswordError: Wrong current password
            ValidationError: Current password missing, or supplied for an account without one
        """
        if user.has_password:
            if not request.current_password:
                raise ValidationError("Current password is required")
            if not await self.credentials.verify_password(user, request.current_password):
                raise InvalidCurrentPasswordError()
        elif request.current_password:
            raise ValidationError("Account has no password; omit the current password")

        await self.users.update(
            user.id,
            password_hash=await self.credentials.hash_password_async(request.new_password),
        )
        logger.info("password_changed", user_id=user.id)
        self.recorder.log_update(
            user.id,
            USER_ENTITY,
            user.id,
            before={"passwordChanged": False},
            after={"passwordChanged": True},
            metadata=metadata,
            description="Password changed",
        )

    async def refresh(self, refresh_token: str) -> AuthData:
        """Exchange a valid refresh token for a new pair.

        Raises:
            TokenExpiredError: Refresh token expired
            InvalidTokenError: Refresh token malformed or mis-signed
            UnauthorizedError: User gone or disabled
            AccountLockedError: User locked out after failed signins
        """
        claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        try:
            user = await self.users.get_by_id(claims["sub"])
        except InvalidIdentifierError:
            user = None
        if user is None or not user.is_active:
            raise UnauthorizedError("User not found or inactive")
        if self.credentials.is_locked(user):
            raise AccountLockedError()
        return self._auth_data(user)

    def logout(self, user: User, metadata: RequestMetadata) -> None:
        """Record the signout. Tokens are stateless and stay valid until expiry."""
        logger.info("user_signed_out", user_id=user.id)
        self.recorder.log_read(
            user.id, USER_ENTITY, user.id, metadata=metadata, description="User signed out"
        )

    async def update_profile(
        self, user: User, request: UpdateProfileRequest, metadata: RequestMetadata
    ) -> UserSummary:
        """Update name and/or avatar. Role and credentials are never touched here."""
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        if not changes:
            return UserSummary.from_user(user)

        before = {k: getattr(user, k) for k in changes}
        updated = await self.users.update(user.id, **changes) or user
        self.recorder.log_update(
            user.id,
            USER_ENTITY,
            user.id,
            before=before,
            after={k: getattr(updated, k) for k in changes},
            metadata=metadata,
            description="Profile updated",
        )
        return UserSummary.from_user(updated)
