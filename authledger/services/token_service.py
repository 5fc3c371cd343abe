"""Session token service: signed access and refresh JWTs."""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import jwt
import structlog

from authledger.config import Settings
from authledger.errors import InvalidTokenError, TokenExpiredError
from authledger.models.auth import TokenPair
from authledger.models.user import User

logger = structlog.get_logger(__name__)

JWT_ALGORITHM = "HS256"


class TokenKind(str, Enum):
    """Token classes, each with its own secret, audience and lifetime."""

    ACCESS = "access"
    REFRESH = "refresh"


# Audience claim per token class
AUDIENCES = {
    TokenKind.ACCESS: "user",
    TokenKind.REFRESH: "refresh",
}


class TokenService:
    """Issue and verify stateless bearer tokens.

    Access tokens carry ``sub``, ``email`` and ``role``; refresh tokens carry
    ``sub`` only. Nothing is stored server-side, so there is no revocation.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._secrets = {
            TokenKind.ACCESS: settings.jwt_access_secret,
            TokenKind.REFRESH: settings.jwt_refresh_secret,
        }
        self._lifetimes = {
            TokenKind.ACCESS: timedelta(seconds=settings.jwt_access_expires_seconds),
            TokenKind.REFRESH: timedelta(seconds=settings.jwt_refresh_expires_seconds),
        }

    @property
    def access_expires_in(self) -> int:
        """Access token lifetime in seconds."""
        return self.settings.jwt_access_expires_seconds

    def _issue(self, claims: dict[str, Any], kind: TokenKind) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            **claims,
            "iss": self.settings.jwt_issuer,
            "aud": AUDIENCES[kind],
            "iat": now,
            "exp": now + self._lifetimes[kind],
        }
        return jwt.encode(payload, self._secrets[kind], algorithm=JWT_ALGORITHM)

    def issue_access_token(self, claims: dict[str, Any]) -> str:
        """Create a signed access token.

        Args:
            claims: Must contain ``sub`` (user id), ``email`` and ``role``

        Returns:
            Encoded JWT string
        """
        return self._issue(
            {"sub": claims["sub"], "email": claims["email"], "role": claims["role"]},
            TokenKind.ACCESS,
        )

    def issue_refresh_token(self, claims: dict[str, Any]) -> str:
        """Create a signed refresh token carrying the user id only."""
        return self._issue({"sub": claims["sub"]}, TokenKind.REFRESH)

    def issue_pair(self, user: User) -> TokenPair:
        """Issue a fresh access/refresh pair for a user."""
        claims = {"sub": user.id, "email": user.email, "role": user.role.value}
        pair = TokenPair(
            access_token=self.issue_access_token(claims),
            refresh_token=self.issue_refresh_token(claims),
            expires_in=self.access_expires_in,
        )
        logger.debug(
            "token_pair_issued",
            user_id=user.id,
            expires_seconds=self.access_expires_in,
        )
        return pair

    def verify(self, token: str, kind: TokenKind) -> dict[str, Any]:
        """Decode and validate a token of the given class.

        Args:
            token: Encoded JWT string
            kind: Which secret/audience to validate against

        Returns:
            Decoded claims

        Raises:
            TokenExpiredError: If the signature is valid but ``exp`` has passed
            InvalidTokenError: If the token is malformed, mis-signed or for another audience
        """
        label = "Access" if kind == TokenKind.ACCESS else "Refresh"
        try:
            return jwt.decode(
                token,
                self._secrets[kind],
                algorithms=[JWT_ALGORITHM],
                audience=AUDIENCES[kind],
                issuer=self.settings.jwt_issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            raise TokenExpiredError(f"{label} token has expired")
        except jwt.InvalidTokenError as e:
            logger.info("token_rejected", kind=kind.value, reason=type(e).__name__)
            raise InvalidTokenError(f"Invalid {label.lower()} token")

    @staticmethod
    def extract_bearer(header_value: Optional[str]) -> Optional[str]:
        """Return the token from ``"Bearer <token>"``; any other shape yields None."""
        if not header_value:
            return None
        parts = header_value.split(" ")
        if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
            return None
        return parts[1]
