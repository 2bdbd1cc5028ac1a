"""Token verification.

Provides:
- TokenVerifier: Protocol for token verification
- JwtSecretVerifier: HS256 verifier with a shared secret (all environments)

Tokens are minted by the identity provider in front of this service; the
service only checks them.
"""

import logging
from typing import Any, Protocol

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
)

from chatrelay.config import Settings
from chatrelay.errors import ApiError, ApiErrorCode

logger = logging.getLogger(__name__)

# Clock skew allowance in seconds
CLOCK_SKEW_SECONDS = 60

# Used only when CHATRELAY_ENV is local/test and no AUTH_JWT_SECRET is set
DEV_JWT_SECRET = "chatrelay-dev-secret-do-not-use-in-prod"


class TokenVerifier(Protocol):
    """Protocol for token verification.

    Implementations must verify JWT tokens and return decoded claims.
    """

    def verify(self, token: str) -> dict[str, Any]:
        """Verify token and return decoded claims.

        Raises:
            ApiError(E_UNAUTHENTICATED): Token is invalid, expired, or malformed.
        """
        ...


class JwtSecretVerifier:
    """Bearer token verifier for HS256 tokens.

    Validates:
    - Signature with the shared secret
    - exp with +-60s clock skew
    - iss matches configured issuer (after normalization)
    - aud must be in configured audience list
    - sub must be a non-empty string
    """

    algorithm = "HS256"

    def __init__(self, secret: str, issuer: str, audiences: list[str]):
        self.secret = secret
        self.issuer = issuer.rstrip("/")
        self.audiences = audiences

    @classmethod
    def from_settings(cls, settings: Settings) -> "JwtSecretVerifier":
        secret = settings.auth_jwt_secret
        if not secret:
            # validate_required_settings guarantees a secret outside local/test
            logger.warning("auth_dev_secret_in_use")
            secret = DEV_JWT_SECRET
        return cls(secret, settings.normalized_issuer, settings.audience_list)

    def verify(self, token: str) -> dict[str, Any]:
        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audiences,
                issuer=self.issuer,
                leeway=CLOCK_SKEW_SECONDS,
                options={
                    "require": ["exp", "iss", "sub"],
                    "verify_aud": True,
                },
            )
        except ExpiredSignatureError as e:
            logger.warning("auth_failure", extra={"reason": "expired_token"})
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Token expired") from e
        except InvalidSignatureError as e:
            logger.warning("auth_failure", extra={"reason": "invalid_signature"})
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token signature") from e
        except InvalidIssuerError as e:
            logger.warning("auth_failure", extra={"reason": "invalid_issuer"})
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token issuer") from e
        except InvalidAudienceError as e:
            logger.warning("auth_failure", extra={"reason": "invalid_audience"})
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token audience") from e
        except DecodeError as e:
            logger.warning("auth_failure", extra={"reason": "decode_error", "error": str(e)})
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token format") from e
        except InvalidTokenError as e:
            logger.warning("auth_failure", extra={"reason": "invalid_token", "error": str(e)})
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token") from e

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub.strip():
            logger.warning("auth_failure", extra={"reason": "missing_sub"})
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token: missing sub")

        return payload
