"""Auth request and response models with validation."""

import re
from typing import Optional

from pydantic import Field, field_validator

from authledger.models.common import CamelModel
from authledger.models.user import UserSummary

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_STRENGTH_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")


def _normalize_email(v: str) -> str:
    v = v.strip().lower()
    if not EMAIL_PATTERN.match(v):
        raise ValueError("Please provide a valid email address")
    return v


def _check_password_strength(v: str) -> str:
    if not PASSWORD_STRENGTH_PATTERN.match(v):
        raise ValueError(
            "Password must contain at least one lowercase letter, "
            "one uppercase letter, and one number"
        )
    return v


class SignupRequest(CamelModel):
    """Email/password registration.

    Attributes:
        name: Display name (2-50 chars, trimmed)
        email: Email address, stored lowercased
        password: 6-128 chars with lower, upper and digit
    """

    name: str = Field(..., min_length=2, max_length=50)
    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        """Trim the name and reject whitespace-only values."""
        stripped = v.strip()
        if len(stripped) < 2:
            raise ValueError("Name must be at least 2 characters long")
        return stripped

    @field_validator("email")
    @classmethod
    def email_valid(cls, v: str) -> str:
        return _normalize_email(v)

    @field_validator("password")
    @classmethod
    def password_strong(cls, v: str) -> str:
        return _check_password_strength(v)


class SigninRequest(CamelModel):
    """Email/password credentials."""

    email: str = Field(..., max_length=254)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("email")
    @classmethod
    def email_valid(cls, v: str) -> str:
        return _normalize_email(v)


class IdentityAuthRequest(CamelModel):
    """Third-party identity token issued to the frontend."""

    token: str = Field(..., min_length=1)


class ForgotPasswordRequest(CamelModel):
    email: str = Field(..., max_length=254)

    @field_validator("email")
    @classmethod
    def email_valid(cls, v: str) -> str:
        return _normalize_email(v)


class ResetPasswordRequest(CamelModel):
    """Plaintext reset token from the emailed link plus the new password."""

    token: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6, max_length=128)

    @field_validator("password")
    @classmethod
    def password_strong(cls, v: str) -> str:
        return _check_password_strength(v)


class VerifyEmailRequest(CamelModel):
    token: str = Field(..., min_length=1)


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1)


class UpdateProfileRequest(CamelModel):
    """Profile edit. Only name and avatar are writable; other keys are ignored."""

    name: Optional[str] = Field(default=None, min_length=2, max_length=50)
    avatar: Optional[str] = Field(default=None, max_length=500)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        stripped = v.strip()
        if len(stripped) < 2:
            raise ValueError("Name must be at least 2 characters long")
        return stripped


class ChangePasswordRequest(CamelModel):
    """Password change for an authenticated user.

    ``current_password`` is required for accounts that have a password and
    must be omitted for identity-provider-only accounts.
    """

    current_password: Optional[str] = Field(default=None, max_length=128)
    new_password: str = Field(..., min_length=6, max_length=128)

    @field_validator("new_password")
    @classmethod
    def password_strong(cls, v: str) -> str:
        return _check_password_strength(v)


class TokenPair(CamelModel):
    """Access/refresh token pair issued on every successful authentication."""

    access_token: str
    refresh_token: str
    expires_in: int = Field(ge=1, description="Access token lifetime in seconds")


class AuthData(CamelModel):
    """Payload of signup, signin, identity signin and refresh responses."""

    user: UserSummary
    access_token: str
    refresh_token: str
    expires_in: int
    is_new_user: Optional[bool] = None


class UserData(CamelModel):
    user: UserSummary
