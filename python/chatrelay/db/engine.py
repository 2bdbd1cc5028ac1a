"""SQLAlchemy engine creation and configuration.

The engine is created once at application startup and provides
connection pooling for all database operations.
"""

from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from chatrelay.config import get_settings
from chatrelay.db.models import Base


def create_db_engine(database_url: str | None = None) -> Engine:
    """Create a SQLAlchemy engine with the given URL.

    Args:
        database_url: Connection string. If None, uses settings.

    Note:
        PostgreSQL (postgresql+psycopg://...) and SQLite are supported. SQLite
        connections get foreign keys enabled; in-memory SQLite shares a single
        connection so every session sees the same database.
    """
    if database_url is None:
        settings = get_settings()
        database_url = settings.database_url

    if not database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            pool_pre_ping=True,
            echo=False,
        )

    kwargs: dict = {"connect_args": {"check_same_thread": False}, "echo": False}
    if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
        kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **kwargs)

    @event.listens_for(engine, "connect")
    def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    return engine


@lru_cache
def get_engine() -> Engine:
    """Get the cached database engine."""
    return create_db_engine()


def create_schema(engine: Engine) -> None:
    """Create every table declared on the ORM metadata; existing tables are kept."""
    Base.metadata.create_all(engine)
