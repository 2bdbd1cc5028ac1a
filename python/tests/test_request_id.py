"""Tests for X-Request-ID middleware.

Tests cover:
- Request ID generation when missing
- Request ID preservation when valid
- Request ID normalization (UUID lowercase)
- Request ID replacement when invalid
- Request ID presence on auth failures
- Request ID in error response body
"""

from uuid import UUID

import pytest
from fastapi.testclient import TestClient

from chatrelay.app import add_request_id_middleware, create_app
from chatrelay.middleware.request_id import is_valid_request_id, resolve_request_id
from tests.helpers import auth_headers, create_test_user_id


@pytest.fixture
def rid_client(session_factory, storage):
    """Client with auth + request-id middleware, as the launcher builds it."""
    app = create_app(storage=storage)
    # Added LAST so it runs FIRST (outermost)
    add_request_id_middleware(app, log_requests=False)
    with TestClient(app) as client:
        yield client


class TestRequestIdMiddleware:
    """Tests for X-Request-ID middleware."""

    def test_request_id_generated_when_missing(self, rid_client):
        response = rid_client.get("/api/me", headers=auth_headers(create_test_user_id()))

        assert response.status_code == 200
        UUID(response.headers["X-Request-ID"])

    def test_request_id_preserved_when_valid(self, rid_client):
        response = rid_client.get(
            "/api/me",
            headers={**auth_headers(create_test_user_id()), "X-Request-ID": "abc_def-123"},
        )

        assert response.headers["X-Request-ID"] == "abc_def-123"

    def test_request_id_uuid_normalized_to_lowercase(self, rid_client):
        response = rid_client.get(
            "/api/me",
            headers={
                **auth_headers(create_test_user_id()),
                "X-Request-ID": "550E8400-E29B-41D4-A716-446655440000",
            },
        )

        assert response.headers["X-Request-ID"] == "550e8400-e29b-41d4-a716-446655440000"

    def test_request_id_replaced_when_invalid(self, rid_client):
        """Invalid request IDs (with spaces) are replaced."""
        response = rid_client.get(
            "/api/me",
            headers={**auth_headers(create_test_user_id()), "X-Request-ID": "bad id"},
        )

        new_id = response.headers["X-Request-ID"]
        assert new_id != "bad id"
        UUID(new_id)

    def test_request_id_present_on_auth_failure(self, rid_client):
        response = rid_client.get("/api/me")

        assert response.status_code == 401
        assert "X-Request-ID" in response.headers

    def test_error_response_includes_request_id_in_body(self, rid_client):
        response = rid_client.get(
            "/api/chats/does-not-exist",
            headers={**auth_headers(create_test_user_id()), "X-Request-ID": "trace-404"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["request_id"] == "trace-404"
        assert response.headers["X-Request-ID"] == "trace-404"

    def test_health_gets_request_id(self, rid_client):
        response = rid_client.get("/health")

        assert response.status_code == 200
        assert "X-Request-ID" in response.headers


class TestRequestIdValidation:
    """Tests for request ID validation edge cases."""

    @pytest.mark.parametrize(
        "value",
        ["request.id.with.dots", "request_id_with_underscores", "request-id", "a" * 128],
    )
    def test_valid(self, value):
        assert is_valid_request_id(value)
        assert resolve_request_id(value) == value

    @pytest.mark.parametrize("value", ["a" * 129, "has space", "slash/y", ""])
    def test_invalid_is_replaced(self, value):
        resolved = resolve_request_id(value)

        assert resolved != value
        UUID(resolved)

    def test_missing_is_generated(self):
        UUID(resolve_request_id(None))
