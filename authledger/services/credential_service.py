"""Credential store: password hashing, lockout counters and one-time tokens."""

import asyncio
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import structlog

from authledger.config import Settings
from authledger.models.user import User
from authledger.repositories.base import UserRepository

logger = structlog.get_logger(__name__)

# bcrypt only consumes the first 72 bytes of its input
BCRYPT_MAX_BYTES = 72


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_token(token: str) -> str:
    """One-way hash of a reset/verification token for storage and lookup."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class CredentialService:
    """Owns every secret-bearing field of a User record."""

    def __init__(self, settings: Settings, users: UserRepository):
        self.settings = settings
        self.users = users
        self._dummy_hash: Optional[bytes] = None

    def hash_password(self, password: str) -> str:
        """Hash a password using bcrypt.

        Args:
            password: Plain-text password to hash

        Returns:
            Bcrypt hash string
        """
        salt = bcrypt.gensalt(rounds=self.settings.bcrypt_rounds)
        return bcrypt.hashpw(_encode(password), salt).decode("utf-8")

    async def hash_password_async(self, password: str) -> str:
        """Hash off the event loop so sibling requests keep running."""
        return await asyncio.to_thread(self.hash_password, password)

    def _check(self, candidate: str, password_hash: Optional[str]) -> bool:
        if not password_hash:
            # Same bcrypt cost as a real comparison.
            if self._dummy_hash is None:
                self._dummy_hash = bcrypt.hashpw(
                    b"unused", bcrypt.gensalt(rounds=self.settings.bcrypt_rounds)
                )
            bcrypt.checkpw(_encode(candidate), self._dummy_hash)
            return False
        try:
            return bcrypt.checkpw(_encode(candidate), password_hash.encode("utf-8"))
        except ValueError:
            logger.warning("password_hash_malformed")
            return False

    async def verify_password(self, user: User, candidate: str) -> bool:
        """Constant-time comparison of a candidate password against the stored hash.

        Returns False for accounts without a password.
        """
        return await asyncio.to_thread(self._check, candidate, user.password_hash)

    @staticmethod
    def is_locked(user: User, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return user.lock_until is not None and user.lock_until > now

    async def increment_failed_attempts(self, user: User) -> Optional[User]:
        """Record one failed signin, locking the account when the threshold is reached.

        Reaching ``max_login_attempts`` sets ``lock_until`` to now plus the
        lock duration and resets the counter, forcing a cool-down.
        """
        lock_until = datetime.now(timezone.utc) + timedelta(
            minutes=self.settings.lock_duration_minutes
        )
        updated = await self.users.register_failed_login(
            user.id, self.settings.max_login_attempts, lock_until
        )
        if updated is not None and self.is_locked(updated):
            logger.warning(
                "account_locked",
                user_id=user.id,
                lock_until=updated.lock_until.isoformat(),
            )
        return updated

    async def reset_failed_attempts(self, user: User) -> Optional[User]:
        """Clear the counter and any lock after a successful authentication."""
        if user.failed_login_attempts == 0 and user.lock_until is None:
            return user
        return await self.users.update(user.id, failed_login_attempts=0, lock_until=None)

    @staticmethod
    def generate_token(ttl: timedelta) -> tuple[str, str, datetime]:
        """Create a random token.

        Returns:
            Tuple of (plaintext, sha256 hash, expiry)
        """
        plaintext = secrets.token_hex(32)
        return plaintext, hash_token(plaintext), datetime.now(timezone.utc) + ttl

    @property
    def password_reset_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.password_reset_ttl_minutes)

    @property
    def email_verification_ttl(self) -> timedelta:
        return timedelta(hours=self.settings.email_verification_ttl_hours)

    async def create_password_reset_token(self, user: User) -> str:
        """Store the hash and expiry of a fresh reset token and return the plaintext once."""
        plaintext, token_hash, expires = self.generate_token(self.password_reset_ttl)
        await self.users.update(
            user.id,
            password_reset_token_hash=token_hash,
            password_reset_expires=expires,
        )
        return plaintext

    async def clear_password_reset_token(self, user: User) -> None:
        await self.users.update(
            user.id, password_reset_token_hash=None, password_reset_expires=None
        )

    async def create_email_verification_token(self, user: User) -> str:
        """Store the hash and expiry of a fresh verification token and return the plaintext once."""
        plaintext, token_hash, expires = self.generate_token(self.email_verification_ttl)
        await self.users.update(
            user.id,
            email_verification_token_hash=token_hash,
            email_verification_expires=expires,
        )
        return plaintext
