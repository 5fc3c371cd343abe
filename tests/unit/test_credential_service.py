"""Unit tests for CredentialService: hashing, lockout and one-time tokens."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from authledger.models.user import User
from authledger.repositories.base import new_object_id
from authledger.repositories.memory import InMemoryUserRepository
from authledger.services.credential_service import CredentialService, hash_token
from tests.conftest import make_settings


@pytest.fixture
def settings():
    return make_settings(max_login_attempts=3, lock_duration_minutes=30)


@pytest.fixture
def users():
    return InMemoryUserRepository()


@pytest.fixture
def service(settings, users):
    return CredentialService(settings, users)


async def _store_user(users, service, password="Password123", **kwargs) -> User:
    now = datetime.now(timezone.utc)
    user = User(
        id=new_object_id(),
        name="Test User",
        email=kwargs.pop("email", "test@example.com"),
        password_hash=service.hash_password(password) if password else None,
        created_at=now,
        updated_at=now,
        **kwargs,
    )
    return await users.create(user)


# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------

class TestPasswordHashing:
    """Tests for bcrypt hash_password / verify_password."""

    def test_hash_password_returns_bcrypt_string(self, service):
        hashed = service.hash_password("Password123")
        assert hashed.startswith("$2b$")
        assert len(hashed) == 60

    def test_hash_password_uses_configured_rounds(self, service):
        assert service.hash_password("Password123").startswith("$2b$04$")

    def test_hash_password_different_salts(self, service):
        assert service.hash_password("same") != service.hash_password("same")

    async def test_verify_password_correct(self, service, users):
        user = await _store_user(users, service)
        assert await service.verify_password(user, "Password123") is True

    async def test_verify_password_wrong(self, service, users):
        user = await _store_user(users, service)
        assert await service.verify_password(user, "Password124") is False

    async def test_account_without_password_never_verifies(self, service, users):
        user = await _store_user(users, service, password=None, external_id="g-1")
        assert await service.verify_password(user, "") is False
        assert await service.verify_password(user, "anything") is False

    async def test_malformed_hash_is_a_mismatch(self, service, users):
        user = await _store_user(users, service)
        broken = user.model_copy(update={"password_hash": "not-a-bcrypt-hash"})
        assert await service.verify_password(broken, "Password123") is False

    async def test_long_passwords_are_truncated_consistently(self, service, users):
        long_password = "Aa1" + "x" * 100
        user = await _store_user(users, service, password=long_password)
        assert await service.verify_password(user, long_password) is True


# ---------------------------------------------------------------------------
# Lockout
# ---------------------------------------------------------------------------

class TestLockout:
    """Failed-attempt counting and temporary locks."""

    async def test_counter_increments_below_threshold(self, service, users):
        user = await _store_user(users, service)

        updated = await service.increment_failed_attempts(user)

        assert updated.failed_login_attempts == 1
        assert updated.lock_until is None
        assert service.is_locked(updated) is False

    async def test_threshold_locks_and_resets_counter(self, service, users, settings):
        user = await _store_user(users, service)

        for _ in range(settings.max_login_attempts):
            user = await service.increment_failed_attempts(user)

        assert user.failed_login_attempts == 0
        assert service.is_locked(user) is True
        remaining = user.lock_until - datetime.now(timezone.utc)
        assert timedelta(minutes=29) < remaining <= timedelta(minutes=30)

    async def test_concurrent_failures_are_not_lost(self, service, users, settings):
        user = await _store_user(users, service)

        await asyncio.gather(
            *(service.increment_failed_attempts(user) for _ in range(settings.max_login_attempts))
        )

        stored = await users.get_by_id(user.id)
        assert service.is_locked(stored) is True

    def test_lock_expires(self, service):
        now = datetime.now(timezone.utc)
        user = User(
            id=new_object_id(),
            name="Test User",
            email="t@example.com",
            lock_until=now - timedelta(seconds=1),
            created_at=now,
            updated_at=now,
        )
        assert service.is_locked(user) is False
        assert service.is_locked(user, now=now - timedelta(minutes=5)) is True

    async def test_reset_clears_counter_and_lock(self, service, users):
        user = await _store_user(
            users,
            service,
            failed_login_attempts=2,
            lock_until=datetime.now(timezone.utc) + timedelta(minutes=5),
        )

        updated = await service.reset_failed_attempts(user)

        assert updated.failed_login_attempts == 0
        assert updated.lock_until is None

    async def test_reset_without_state_is_noop(self, service, users):
        user = await _store_user(users, service)
        assert await service.reset_failed_attempts(user) is user


# ---------------------------------------------------------------------------
# One-time tokens
# ---------------------------------------------------------------------------

class TestOneTimeTokens:
    """Reset and verification tokens are stored hashed with an expiry."""

    def test_generate_token_shape(self):
        plaintext, token_hash, expires = CredentialService.generate_token(timedelta(minutes=10))
        assert len(plaintext) == 64
        assert token_hash == hash_token(plaintext)
        assert token_hash != plaintext
        assert expires > datetime.now(timezone.utc)

    async def test_password_reset_token_lookup(self, service, users):
        user = await _store_user(users, service)

        plaintext = await service.create_password_reset_token(user)

        stored = await users.get_by_id(user.id)
        assert stored.password_reset_token_hash == hash_token(plaintext)
        assert stored.password_reset_expires - datetime.now(timezone.utc) <= timedelta(minutes=10)
        found = await users.get_by_password_reset_token(
            hash_token(plaintext), datetime.now(timezone.utc)
        )
        assert found.id == user.id

    async def test_expired_reset_token_not_found(self, service, users):
        user = await _store_user(users, service)
        plaintext = await service.create_password_reset_token(user)

        later = datetime.now(timezone.utc) + timedelta(minutes=11)
        assert await users.get_by_password_reset_token(hash_token(plaintext), later) is None

    async def test_clear_password_reset_token(self, service, users):
        user = await _store_user(users, service)
        plaintext = await service.create_password_reset_token(user)

        await service.clear_password_reset_token(user)

        assert await users.get_by_password_reset_token(
            hash_token(plaintext), datetime.now(timezone.utc)
        ) is None

    async def test_email_verification_token_expiry(self, service, users):
        user = await _store_user(users, service)

        plaintext = await service.create_email_verification_token(user)

        stored = await users.get_by_id(user.id)
        assert stored.email_verification_token_hash == hash_token(plaintext)
        remaining = stored.email_verification_expires - datetime.now(timezone.utc)
        assert timedelta(hours=23) < remaining <= timedelta(hours=24)
