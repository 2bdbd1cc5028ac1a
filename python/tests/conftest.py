"""Pytest configuration and fixtures for chatrelay tests.

Test isolation strategy:
- Every test gets its own SQLite file database created from the ORM metadata
- The default session factory is rebound to that database, so background
  jobs and the auth bootstrap see the same rows as the test
- Blob storage is an in-memory FakeStorageClient
- Auth tests mint HS256 tokens with the test secret (see tests.helpers)
"""

import base64
import sys
from collections.abc import Generator
from pathlib import Path

# Add repo root to sys.path for importing top-level packages (e.g., apps)
_repo_root = Path(__file__).parent.parent.parent
if str(_repo_root) not in sys.path:
    sys.path.insert(0, str(_repo_root))

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from chatrelay.config import clear_settings_cache
from chatrelay.db.engine import create_db_engine
from chatrelay.db.models import Base
from chatrelay.db.session import create_session_factory, set_session_factory
from chatrelay.services.crypto import clear_master_key_cache
from chatrelay.storage.client import FakeStorageClient
from tests.helpers import TEST_AUDIENCE, TEST_ISSUER, TEST_JWT_SECRET, create_test_user_id

TEST_MASTER_KEY = base64.b64encode(b"test_master_key_for_encryption!!").decode("ascii")


@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path) -> Generator[None, None, None]:
    """Point settings at a per-test database and deterministic secrets."""
    monkeypatch.setenv("CHATRELAY_ENV", "test")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'chatrelay.db'}")
    monkeypatch.setenv("AUTH_JWT_SECRET", TEST_JWT_SECRET)
    monkeypatch.setenv("AUTH_JWT_ISSUER", TEST_ISSUER)
    monkeypatch.setenv("AUTH_JWT_AUDIENCES", TEST_AUDIENCE)
    monkeypatch.setenv("CHATRELAY_KEY_ENCRYPTION_KEY", TEST_MASTER_KEY)
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "uploads"))
    clear_settings_cache()
    clear_master_key_cache()
    yield
    clear_settings_cache()
    clear_master_key_cache()


@pytest.fixture
def engine(tmp_path) -> Generator[Engine, None, None]:
    """Fresh database with every table created."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'chatrelay.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> Generator[sessionmaker[Session], None, None]:
    """Session factory bound to the test database, installed as the default."""
    factory = create_session_factory(engine)
    set_session_factory(factory)
    yield factory
    set_session_factory(None)


@pytest.fixture
def db_session(session_factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def storage() -> FakeStorageClient:
    return FakeStorageClient()


@pytest.fixture
def app(session_factory, storage):
    """App with auth middleware verifying tokens minted by tests.helpers."""
    from chatrelay.app import create_app

    return create_app(storage=storage)


@pytest.fixture
def client(app) -> Generator[TestClient, None, None]:
    """Test client with the lifespan running (router, dispatcher, runner)."""
    with TestClient(app) as client:
        yield client


@pytest.fixture
def test_user_id() -> str:
    return create_test_user_id()
