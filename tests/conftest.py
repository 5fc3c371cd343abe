"""Pytest configuration and fixtures."""

import os
import time
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Optional

import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient

# Set test environment variables before importing app
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-0123456789abcdef")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-fedcba9876543210")
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from authledger.config import Settings  # noqa: E402
from authledger.main import create_app  # noqa: E402
from authledger.models.user import User, UserRole  # noqa: E402
from authledger.repositories.base import new_object_id  # noqa: E402
from authledger.repositories.memory import (  # noqa: E402
    InMemoryAuditLogRepository,
    InMemoryUserRepository,
)
from authledger.services.background import await_pending_tasks  # noqa: E402
from authledger.services.email_service import EmailService  # noqa: E402
from authledger.services.identity_service import IdentityVerifier  # noqa: E402

GOOGLE_CLIENT_ID = "test-client-id.apps.googleusercontent.com"
IDENTITY_KID = "test-key"


def make_settings(**overrides: Any) -> Settings:
    """Settings isolated from any local .env file."""
    values = {
        "environment": "test",
        "storage_backend": "memory",
        "jwt_access_secret": "test-access-secret-0123456789abcdef",
        "jwt_refresh_secret": "test-refresh-secret-fedcba9876543210",
        "bcrypt_rounds": 4,
        "google_client_id": GOOGLE_CLIENT_ID,
        "email_host": "smtp.test.local",
        "email_username": "mailer",
        "email_password": "mailer-password",
        "email_from": "noreply@test.local",
        "app_url": "http://frontend.test",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


class RecordingEmailService(EmailService):
    """EmailService that records outgoing messages instead of talking SMTP."""

    def __init__(self, settings: Settings, succeed: bool = True):
        super().__init__(settings)
        self.succeed = succeed
        self.sent: list[dict[str, str]] = []

    async def send_email(self, to: str, subject: str, text: str, html: str) -> bool:
        if not self.is_configured():
            return False
        self.sent.append({"to": to, "subject": subject, "text": text, "html": html})
        return self.succeed

    def last_token(self, marker: str) -> Optional[str]:
        """Pull the token out of the last link containing ``marker``."""
        for message in reversed(self.sent):
            for line in message["text"].splitlines():
                if marker in line and "token=" in line:
                    return line.strip().split("token=", 1)[1]
        return None


class StaticJWKSClient:
    """Stands in for jwt.PyJWKClient with one fixed public key."""

    def __init__(self, public_key, kid: str = IDENTITY_KID):
        self.public_key = public_key
        self.kid = kid

    def get_signing_key_from_jwt(self, token: str):
        header = jwt.get_unverified_header(token)
        if header.get("kid") != self.kid:
            raise jwt.PyJWKClientError(f'Unable to find a signing key that matches: "{header.get("kid")}"')
        return SimpleNamespace(key=self.public_key, key_id=self.kid)


@pytest.fixture(scope="session")
def identity_private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def make_identity_token(identity_private_key):
    """Factory for provider-signed identity tokens."""

    def _make(
        sub: str = "google-sub-123",
        email: str = "jane@example.com",
        name: Optional[str] = "Jane Roe",
        picture: Optional[str] = "https://img.example.com/jane.png",
        email_verified: Any = True,
        aud: str = GOOGLE_CLIENT_ID,
        iss: str = "https://accounts.google.com",
        expires_in: int = 3600,
        key=None,
        kid: str = IDENTITY_KID,
    ) -> str:
        now = int(time.time())
        claims = {
            "sub": sub,
            "email": email,
            "email_verified": email_verified,
            "aud": aud,
            "iss": iss,
            "iat": now - 10,
            "exp": now + expires_in,
        }
        if name is not None:
            claims["name"] = name
        if picture is not None:
            claims["picture"] = picture
        return jwt.encode(
            claims,
            key or identity_private_key,
            algorithm="RS256",
            headers={"kid": kid},
        )

    return _make


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def email_service(settings) -> RecordingEmailService:
    return RecordingEmailService(settings)


@pytest.fixture
def identity_verifier(settings, identity_private_key) -> IdentityVerifier:
    return IdentityVerifier(
        settings, jwks_client=StaticJWKSClient(identity_private_key.public_key())
    )


@pytest.fixture
def user_repository() -> InMemoryUserRepository:
    return InMemoryUserRepository()


@pytest.fixture
def audit_repository() -> InMemoryAuditLogRepository:
    return InMemoryAuditLogRepository()


@pytest.fixture
async def app(settings, user_repository, audit_repository, identity_verifier, email_service):
    """Application wired to in-memory repositories and fake collaborators."""
    application = create_app(
        settings,
        user_repository=user_repository,
        audit_repository=audit_repository,
        identity_verifier=identity_verifier,
        email_service=email_service,
    )
    yield application
    await await_pending_tasks(timeout=5.0)
    await application.state.audit_dispatcher.stop(timeout=5.0)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for integration tests."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def settle(app) -> None:
    """Wait for side tasks and queued audit writes to finish."""
    await await_pending_tasks(timeout=5.0)
    await app.state.audit_dispatcher.drain(timeout=5.0)


async def create_user(
    app,
    email: str = "admin@example.com",
    password: str = "Password123",
    name: str = "Admin User",
    role: UserRole = UserRole.ADMIN,
    **fields: Any,
) -> User:
    """Insert a user straight into the repository, bypassing signup."""
    credentials_hash = app.state.auth_service.credentials.hash_password(password)
    now = datetime.now(timezone.utc)
    user = User(
        id=new_object_id(),
        name=name,
        email=email,
        password_hash=credentials_hash,
        role=role,
        created_at=now,
        updated_at=now,
        **fields,
    )
    return await app.state.user_repository.create(user)


async def signup(client: AsyncClient, **overrides: Any) -> dict:
    payload = {"name": "John Doe", "email": "john@example.com", "password": "Password123"}
    payload.update(overrides)
    response = await client.post("/auth/signup", json=payload)
    assert response.status_code == 201, response.text
    return response.json()["data"]


async def signin(client: AsyncClient, email: str, password: str = "Password123") -> dict:
    response = await client.post("/auth/signin", json={"email": email, "password": password})
    assert response.status_code == 200, response.text
    return response.json()["data"]


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
