"""SQLAlchemy ORM models for chatrelay.

Defines all database tables using SQLAlchemy 2.x declarative patterns.
Column types are portable between PostgreSQL and SQLite; timestamps are
stored as UTC and always come back timezone-aware.
"""

import secrets
import threading
from datetime import UTC, datetime, timedelta
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
ID_SIZE = 21


def create_id(prefix: str) -> str:
    """Generate a prefixed random id, e.g. ``chat_3k9x...``."""
    return f"{prefix}_" + "".join(secrets.choice(ID_ALPHABET) for _ in range(ID_SIZE))


_clock_lock = threading.Lock()
_last_timestamp: datetime | None = None


def utcnow() -> datetime:
    """Current UTC time, strictly increasing within the process.

    Message order is defined by created_at, so two rows written back to back
    (system prompt then user message) must never share a timestamp.
    """
    global _last_timestamp
    with _clock_lock:
        now = datetime.now(UTC)
        if _last_timestamp is not None and now <= _last_timestamp:
            now = _last_timestamp + timedelta(microseconds=1)
        _last_timestamp = now
        return now


class UTCDateTime(TypeDecorator):
    """DateTime that always round-trips as an aware UTC datetime."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=UTC)
        value = value.astimezone(UTC)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# =============================================================================
# Enums
# =============================================================================


class MessageRole(str, PyEnum):
    """Author of a message. Exhaustive: anything else is a programming error."""

    system = "system"
    user = "user"
    assistant = "assistant"


class KeyScope(str, PyEnum):
    """Visibility of a stored credential.

    personal: usable only by its owner
    shared: usable by every user in the system
    """

    personal = "personal"
    shared = "shared"


def _enum_values(enum_cls: type[PyEnum]) -> list[str]:
    return [member.value for member in enum_cls]


# =============================================================================
# Users and credentials
# =============================================================================


class User(Base):
    """User account. The id matches the ``sub`` claim of bearer tokens.

    Accounts created by an administrator before their holder signs in are
    unclaimed; the first token whose username claim matches adopts the row.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: create_id("user"))
    username: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    grants: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    language: Mapped[str | None] = mapped_column(String(16), nullable=True)
    default_system_prompt: Mapped[str | None] = mapped_column(Text, nullable=True)
    claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    chats: Mapped[list["Chat"]] = relationship(
        "Chat", back_populates="user", cascade="all, delete-orphan"
    )
    api_keys: Mapped[list["ApiKey"]] = relationship(
        "ApiKey", back_populates="user", cascade="all, delete-orphan"
    )
    attachments: Mapped[list["Attachment"]] = relationship(
        "Attachment", back_populates="user", cascade="all, delete-orphan"
    )


class ApiKey(Base):
    """A provider credential: an encrypted secret or a local endpoint URL.

    At most one row per (user, provider). Secrets are SecretBox ciphertext;
    local providers (lmstudio, ollama) store only ``url``.
    """

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: create_id("key"))
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    encrypted_key: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    key_nonce: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    master_key_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    key_fingerprint: Mapped[str | None] = mapped_column(String(8), nullable=True)
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    scope: Mapped[KeyScope] = mapped_column(
        Enum(KeyScope, name="key_scope", native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=KeyScope.personal,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="api_keys")

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_api_keys_user_provider"),
        CheckConstraint(
            "encrypted_key IS NOT NULL OR url IS NOT NULL",
            name="ck_api_keys_secret_or_url",
        ),
    )


# =============================================================================
# Chats, messages, attachments
# =============================================================================


class Chat(Base):
    """A conversation owned by one user.

    updated_at advances on every message append, edit and truncation.
    """

    __tablename__ = "chats"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: create_id("chat"))
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="New chat")
    is_branched: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    share_path: Mapped[str | None] = mapped_column(String(32), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    user: Mapped["User"] = relationship("User", back_populates="chats")
    messages: Mapped[list["Message"]] = relationship(
        "Message",
        back_populates="chat",
        cascade="all, delete-orphan",
        order_by=lambda: [Message.created_at, Message.id],
    )

    __table_args__ = (Index("ix_chats_user_updated", "user_id", "updated_at"),)


class Message(Base):
    """One turn of a chat. Ordered by created_at, id as tiebreak."""

    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: create_id("msg"))
    temporary_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    chat_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("chats.id", ondelete="CASCADE"), nullable=False
    )
    role: Mapped[MessageRole] = mapped_column(
        Enum(
            MessageRole, name="message_role", native_enum=False, length=16,
            values_callable=_enum_values,
        ),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    model: Mapped[str | None] = mapped_column(String(255), nullable=True)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    sources: Mapped[list[dict] | None] = mapped_column(JSON, nullable=True)
    has_web_search: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    has_attachments: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    chat: Mapped["Chat"] = relationship("Chat", back_populates="messages")
    attachments: Mapped[list["Attachment"]] = relationship(
        "Attachment",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by=lambda: [Attachment.created_at, Attachment.id],
    )

    __table_args__ = (
        Index("ix_messages_chat_created", "chat_id", "created_at"),
        Index("ix_messages_temporary_id", "temporary_id"),
    )


class Attachment(Base):
    """A stored file linked to a message.

    file_path is relative to the storage root ("{user}/{chat}/{file}"); branched
    chats may point several rows at the same blob.
    """

    __tablename__ = "attachments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=lambda: create_id("att"))
    message_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    file_name: Mapped[str] = mapped_column(String(512), nullable=False)
    file_type: Mapped[str] = mapped_column(String(255), nullable=False)
    file_size: Mapped[int] = mapped_column(Integer, nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)

    message: Mapped["Message"] = relationship("Message", back_populates="attachments")
    user: Mapped["User"] = relationship("User", back_populates="attachments")

    __table_args__ = (
        CheckConstraint("file_size >= 0", name="ck_attachments_file_size"),
        Index("ix_attachments_file_path", "file_path"),
    )
