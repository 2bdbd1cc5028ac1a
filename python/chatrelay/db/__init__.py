"""Database module for chatrelay.

Provides engine creation, session management, transaction helpers, and ORM models.
"""

from chatrelay.db.engine import create_db_engine, create_schema, get_engine
from chatrelay.db.models import (
    ApiKey,
    Attachment,
    Base,
    Chat,
    KeyScope,
    Message,
    MessageRole,
    User,
    create_id,
    utcnow,
)
from chatrelay.db.session import get_db, session_scope, transaction

__all__ = [
    # Engine and session
    "create_db_engine",
    "create_schema",
    "get_engine",
    "get_db",
    "session_scope",
    "transaction",
    # Base and helpers
    "Base",
    "create_id",
    "utcnow",
    # Enums
    "KeyScope",
    "MessageRole",
    # Models
    "User",
    "ApiKey",
    "Chat",
    "Message",
    "Attachment",
]
