"""Test helpers for authentication and common test operations.

Provides:
- Token minting for test authentication (HS256, test secret)
- Header generation for test requests
- Background job draining
- SSE body parsing
"""

import json
import time
import uuid

import jwt
from fastapi.testclient import TestClient

TEST_JWT_SECRET = "test-jwt-secret-with-enough-entropy-0123456789"
TEST_ISSUER = "test-issuer"
TEST_AUDIENCE = "test-audience"
DEFAULT_EXPIRES_IN = 3600  # 1 hour


def create_test_user_id() -> str:
    return f"user_{uuid.uuid4().hex[:16]}"


def mint_test_token(
    user_id: str,
    expires_in: int = DEFAULT_EXPIRES_IN,
    issuer: str = TEST_ISSUER,
    audience: str = TEST_AUDIENCE,
    secret: str = TEST_JWT_SECRET,
    **extra_claims,
) -> str:
    """Mint a signed JWT with the given subject and extra claims."""
    now = int(time.time())
    payload = {
        "sub": user_id,
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        **extra_claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(user_id: str, **claims) -> dict[str, str]:
    """Authorization header for a request as user_id."""
    return {"Authorization": f"Bearer {mint_test_token(user_id, **claims)}"}


def wait_for_background(client: TestClient, timeout: float = 10.0) -> None:
    """Block until the app's background thread jobs are done."""
    assert client.app.state.background_runner.wait_idle(timeout=timeout)


def parse_sse(body: str) -> list[tuple[str, dict]]:
    """Split an SSE body into (event, data) pairs."""
    events = []
    for block in body.split("\n\n"):
        if not block.strip():
            continue
        event = None
        data = None
        for line in block.split("\n"):
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        if event is not None:
            events.append((event, data))
    return events
