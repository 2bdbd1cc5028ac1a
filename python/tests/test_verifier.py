"""Tests for bearer token verification.

Tests cover:
- Valid tokens return their claims
- Expiry with clock skew leeway
- Issuer normalization and audience lists
- Signature, format and subject failures map to E_UNAUTHENTICATED
- Dev secret fallback
"""

import jwt
import pytest

from chatrelay.auth.verifier import DEV_JWT_SECRET, JwtSecretVerifier
from chatrelay.config import Settings
from chatrelay.errors import ApiError, ApiErrorCode
from tests.helpers import TEST_AUDIENCE, TEST_ISSUER, TEST_JWT_SECRET, mint_test_token


@pytest.fixture
def verifier() -> JwtSecretVerifier:
    return JwtSecretVerifier(TEST_JWT_SECRET, TEST_ISSUER, [TEST_AUDIENCE, "mobile"])


def _assert_rejected(verifier: JwtSecretVerifier, token: str, message: str) -> None:
    with pytest.raises(ApiError) as exc_info:
        verifier.verify(token)
    assert exc_info.value.code == ApiErrorCode.E_UNAUTHENTICATED
    assert exc_info.value.status_code == 401
    assert message in exc_info.value.message


class TestValidTokens:
    def test_returns_claims(self, verifier):
        claims = verifier.verify(mint_test_token("user_1", email="a@example.com"))

        assert claims["sub"] == "user_1"
        assert claims["email"] == "a@example.com"

    def test_second_audience_accepted(self, verifier):
        claims = verifier.verify(mint_test_token("user_1", audience="mobile"))

        assert claims["aud"] == "mobile"

    def test_expired_within_leeway(self, verifier):
        claims = verifier.verify(mint_test_token("user_1", expires_in=-30))

        assert claims["sub"] == "user_1"

    def test_issuer_trailing_slash_normalized(self):
        verifier = JwtSecretVerifier(TEST_JWT_SECRET, TEST_ISSUER + "/", [TEST_AUDIENCE])

        assert verifier.verify(mint_test_token("user_1"))["sub"] == "user_1"


class TestRejectedTokens:
    def test_expired(self, verifier):
        _assert_rejected(verifier, mint_test_token("user_1", expires_in=-600), "expired")

    def test_wrong_secret(self, verifier):
        token = mint_test_token("user_1", secret="another-secret-with-enough-entropy-000")
        _assert_rejected(verifier, token, "signature")

    def test_wrong_issuer(self, verifier):
        _assert_rejected(verifier, mint_test_token("user_1", issuer="evil"), "issuer")

    def test_wrong_audience(self, verifier):
        _assert_rejected(verifier, mint_test_token("user_1", audience="other"), "audience")

    def test_garbage(self, verifier):
        _assert_rejected(verifier, "not-a-jwt", "format")

    def test_blank_sub(self, verifier):
        _assert_rejected(verifier, mint_test_token("   "), "sub")

    def test_missing_exp(self, verifier):
        token = jwt.encode(
            {"sub": "user_1", "iss": TEST_ISSUER, "aud": TEST_AUDIENCE},
            TEST_JWT_SECRET,
            algorithm="HS256",
        )
        _assert_rejected(verifier, token, "Invalid token")

    def test_other_algorithm(self, verifier):
        token = jwt.encode(
            {"sub": "user_1", "iss": TEST_ISSUER, "aud": TEST_AUDIENCE, "exp": 9999999999},
            TEST_JWT_SECRET,
            algorithm="HS512",
        )
        _assert_rejected(verifier, token, "Invalid token")


class TestFromSettings:
    def test_uses_configured_secret(self):
        settings = Settings(
            DATABASE_URL="sqlite://",
            CHATRELAY_ENV="test",
            AUTH_JWT_SECRET="configured-secret",
            AUTH_JWT_ISSUER="https://id.example/",
            AUTH_JWT_AUDIENCES="web,mobile",
        )

        verifier = JwtSecretVerifier.from_settings(settings)

        assert verifier.secret == "configured-secret"
        assert verifier.issuer == "https://id.example"
        assert verifier.audiences == ["web", "mobile"]

    def test_dev_secret_fallback(self, monkeypatch):
        monkeypatch.delenv("AUTH_JWT_SECRET", raising=False)
        settings = Settings(DATABASE_URL="sqlite://", CHATRELAY_ENV="local")

        assert JwtSecretVerifier.from_settings(settings).secret == DEV_JWT_SECRET
