"""User and credential models."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from authledger.models.common import CamelModel


class UserRole(str, Enum):
    """Roles a user may hold."""

    USER = "user"
    ADMIN = "admin"


class User(BaseModel):
    """A registered user together with its credential bookkeeping.

    ``password_hash`` is absent for accounts created through an external
    identity provider. Token fields only ever hold one-way hashes.
    """

    id: str
    name: str
    email: str
    password_hash: Optional[str] = None
    external_id: Optional[str] = None
    avatar: Optional[str] = None
    role: UserRole = UserRole.USER
    is_email_verified: bool = False
    is_active: bool = True
    last_login: Optional[datetime] = None
    failed_login_attempts: int = 0
    lock_until: Optional[datetime] = None
    password_reset_token_hash: Optional[str] = None
    password_reset_expires: Optional[datetime] = None
    email_verification_token_hash: Optional[str] = None
    email_verification_expires: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


class UserSummary(CamelModel):
    """Public user representation for API responses."""

    id: str
    name: str
    email: str
    role: UserRole
    avatar: Optional[str] = None
    is_email_verified: bool
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            role=user.role,
            avatar=user.avatar,
            is_email_verified=user.is_email_verified,
            last_login=user.last_login,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class ExternalIdentity(BaseModel):
    """Identity claims extracted from a verified third-party identity token."""

    external_id: str
    email: str
    name: str
    avatar: Optional[str] = None
    email_verified: bool = False
