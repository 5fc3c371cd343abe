"""External identity verification for Google-issued ID tokens."""

import asyncio
from typing import Any, Optional

import jwt
import structlog

from authledger.config import Settings
from authledger.errors import (
    IdentityAudienceMismatchError,
    IdentityTokenExpiredError,
    InvalidIdentityTokenError,
    ServiceUnavailableError,
)
from authledger.models.user import ExternalIdentity

logger = structlog.get_logger(__name__)

TRUSTED_ISSUERS = ["accounts.google.com", "https://accounts.google.com"]
IDENTITY_ALGORITHMS = ["RS256"]


class IdentityVerifier:
    """Validate third-party identity tokens against the trusted issuer and our client id.

    Signing keys are fetched from the issuer's JWKS endpoint and cached by
    ``jwt.PyJWKClient``.
    """

    def __init__(self, settings: Settings, jwks_client: Optional[Any] = None):
        self.client_id = settings.google_client_id
        self._jwks_client = jwks_client or jwt.PyJWKClient(
            settings.google_jwks_url, cache_keys=True
        )

    def is_configured(self) -> bool:
        return bool(self.client_id)

    def _decode(self, token: str) -> dict[str, Any]:
        signing_key = self._jwks_client.get_signing_key_from_jwt(token)
        return jwt.decode(
            token,
            signing_key.key,
            algorithms=IDENTITY_ALGORITHMS,
            audience=self.client_id,
            issuer=TRUSTED_ISSUERS,
            options={"require": ["exp", "iat", "sub", "aud", "iss"]},
        )

    async def verify(self, identity_token: str) -> ExternalIdentity:
        """Verify an identity token and map its claims to a local identity.

        Raises:
            ServiceUnavailableError: If no client id is configured
            IdentityTokenExpiredError: If the token is used after ``exp``
            IdentityAudienceMismatchError: If the token was issued to another client
            InvalidIdentityTokenError: For any other signature, issuer or format failure
        """
        if not self.is_configured():
            raise ServiceUnavailableError("Identity provider authentication is not configured")

        try:
            # JWKS lookups do blocking HTTP
            claims = await asyncio.to_thread(self._decode, identity_token)
        except jwt.ExpiredSignatureError:
            logger.info("identity_token_rejected", reason="expired")
            raise IdentityTokenExpiredError("Identity token has expired")
        except jwt.InvalidAudienceError:
            logger.info("identity_token_rejected", reason="audience_mismatch")
            raise IdentityAudienceMismatchError("Identity token audience mismatch")
        except jwt.InvalidIssuerError:
            logger.info("identity_token_rejected", reason="issuer")
            raise InvalidIdentityTokenError("Identity token issuer is not trusted")
        except jwt.InvalidSignatureError:
            logger.info("identity_token_rejected", reason="signature")
            raise InvalidIdentityTokenError("Invalid identity token signature")
        except (jwt.PyJWKClientError, jwt.InvalidTokenError) as e:
            logger.info("identity_token_rejected", reason=type(e).__name__)
            raise InvalidIdentityTokenError(f"Identity token verification failed: {e}")

        email = claims.get("email")
        if not email:
            raise InvalidIdentityTokenError("Identity token carries no email address")

        email_verified = claims.get("email_verified", False)
        if isinstance(email_verified, str):
            email_verified = email_verified.lower() == "true"

        return ExternalIdentity(
            external_id=str(claims["sub"]),
            email=email.strip().lower(),
            name=claims.get("name") or email.split("@")[0],
            avatar=claims.get("picture"),
            email_verified=bool(email_verified),
        )
