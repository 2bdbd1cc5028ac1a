"""Chat and message service layer.

Invariants:
- A chat never exists without its first user message: the chat row, the
  optional system prompt and the user message are one transaction
- Every message insert bumps chat.updated_at in the same transaction
- Messages are ordered by created_at, id as tiebreak
- Attachment blobs are written after the rows commit, in the background
- Only the owner can read or mutate a chat; anything else is a 404
"""

import secrets
import string
from collections.abc import Sequence
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from chatrelay.background import BackgroundRunner
from chatrelay.db.models import Attachment, Chat, Message, MessageRole, User, utcnow
from chatrelay.db.session import transaction
from chatrelay.errors import ApiError, ApiErrorCode, InvalidRequestError, NotFoundError
from chatrelay.logging import get_logger
from chatrelay.schemas.chats import (
    ChatDetailOut,
    ChatOut,
    ChatSummaryOut,
    GroupedChatsOut,
    MessageOut,
    SharedChatOut,
    ShareOut,
    ShareStatusOut,
)
from chatrelay.services.attachments import (
    UploadedFile,
    schedule_attachment_persistence,
    schedule_blob_cleanup,
)
from chatrelay.storage.client import StorageClientBase

logger = get_logger(__name__)

DEFAULT_CHAT_TITLE = "New chat"
BRANCH_TITLE_PREFIX = "Branch of "

SHARE_PATH_ALPHABET = string.ascii_letters + string.digits + "_-"
SHARE_PATH_LENGTH = 12
SHARE_PATH_MAX_ATTEMPTS = 10
SHARE_URL_PREFIX = "/share/"


# =============================================================================
# Lookups
# =============================================================================


def get_owned_chat(db: Session, user_id: str, chat_id: str) -> Chat:
    """Fetch a chat owned by the user.

    Raises:
        NotFoundError: E_CHAT_NOT_FOUND if missing or owned by someone else.
    """
    chat = db.scalar(select(Chat).where(Chat.id == chat_id, Chat.user_id == user_id))
    if chat is None:
        raise NotFoundError(ApiErrorCode.E_CHAT_NOT_FOUND, "Chat not found")
    return chat


def list_messages(db: Session, chat_id: str, *, include_system: bool = True) -> list[Message]:
    stmt = select(Message).where(Message.chat_id == chat_id)
    if not include_system:
        stmt = stmt.where(Message.role != MessageRole.system)
    return list(db.scalars(stmt.order_by(Message.created_at, Message.id)))


def get_user_chats(db: Session, user_id: str, search: str | None = None) -> list[Chat]:
    """The user's chats, most recently updated first.

    search filters by case-insensitive title substring; blank means no filter.
    """
    stmt = select(Chat).where(Chat.user_id == user_id)
    if search and search.strip():
        stmt = stmt.where(Chat.title.ilike(f"%{search.strip()}%"))
    return list(db.scalars(stmt.order_by(Chat.updated_at.desc(), Chat.id)))


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def group_chats_by_date(chats: Sequence[Chat], now: datetime | None = None) -> GroupedChatsOut:
    """Bucket chats by updated_at: today, yesterday, last 7 days, last 30 days, older.

    Day boundaries are UTC. Input order is kept within each bucket.
    """
    now = now or utcnow()
    today = now.date()
    seven_days_ago = _start_of_day(now - timedelta(days=7))
    thirty_days_ago = _start_of_day(now - timedelta(days=30))

    groups = GroupedChatsOut()
    for chat in chats:
        summary = ChatSummaryOut(id=chat.id, title=chat.title)
        updated = chat.updated_at
        if updated.date() == today:
            groups.today.append(summary)
        elif updated.date() == today - timedelta(days=1):
            groups.yesterday.append(summary)
        elif updated > seven_days_ago:
            groups.last7_days.append(summary)
        elif updated > thirty_days_ago:
            groups.last30_days.append(summary)
        else:
            groups.older.append(summary)
    return groups


def get_user_chat(db: Session, user_id: str, chat_id: str) -> ChatDetailOut:
    """A chat with its messages and their attachments, system messages excluded."""
    chat = get_owned_chat(db, user_id, chat_id)
    messages = list_messages(db, chat.id, include_system=False)
    return ChatDetailOut(
        **ChatOut.model_validate(chat).model_dump(),
        messages=[MessageOut.model_validate(m) for m in messages],
    )


# =============================================================================
# Creation and append
# =============================================================================


def _new_user_message(
    chat_id: str,
    content: str,
    model: str | None,
    search_enabled: bool,
    has_attachments: bool,
    temporary_id: str | None,
) -> Message:
    return Message(
        chat_id=chat_id,
        temporary_id=temporary_id,
        role=MessageRole.user,
        content=content,
        model=model,
        has_web_search=search_enabled,
        has_attachments=has_attachments,
        created_at=utcnow(),
    )


def create_chat(
    db: Session,
    runner: BackgroundRunner,
    storage: StorageClientBase,
    user_id: str,
    content: str,
    model: str,
    search_enabled: bool = False,
    files: Sequence[UploadedFile] = (),
    temporary_id: str | None = None,
) -> str:
    """Create a chat with its first user message. Returns the chat id.

    The user's default system prompt, when set, becomes the first message.
    Attachment blobs are stored after commit, off the request path.

    Raises:
        InvalidRequestError: If content is blank.
    """
    if not content.strip():
        raise InvalidRequestError(message="Message content is required")

    user = db.get(User, user_id)
    system_prompt = user.default_system_prompt if user is not None else None

    with transaction(db):
        chat = Chat(user_id=user_id, title=DEFAULT_CHAT_TITLE)
        db.add(chat)
        db.flush()

        if system_prompt and system_prompt.strip():
            db.add(
                Message(
                    chat_id=chat.id,
                    role=MessageRole.system,
                    content=system_prompt,
                    model=model,
                    created_at=utcnow(),
                )
            )

        message = _new_user_message(
            chat.id, content, model, search_enabled, bool(files), temporary_id
        )
        db.add(message)
        db.flush()
        if not message.id:
            raise ApiError(ApiErrorCode.E_INTERNAL, "Failed to create user message")

    logger.info("chat_created", chat_id=chat.id, attachment_count=len(files))
    schedule_attachment_persistence(runner, storage, chat.id, message.id, user_id, files)
    return chat.id


def add_message_to_chat(
    db: Session,
    runner: BackgroundRunner,
    storage: StorageClientBase,
    user_id: str,
    chat_id: str,
    content: str,
    model: str | None,
    search_enabled: bool = False,
    files: Sequence[UploadedFile] = (),
    temporary_id: str | None = None,
) -> str:
    """Append a user message and bump the chat. Returns the message id."""
    chat = get_owned_chat(db, user_id, chat_id)

    with transaction(db):
        message = _new_user_message(
            chat.id, content, model, search_enabled, bool(files), temporary_id
        )
        db.add(message)
        chat.updated_at = utcnow()

    schedule_attachment_persistence(runner, storage, chat.id, message.id, user_id, files)
    return message.id


def save_message(
    db: Session,
    chat_id: str,
    role: MessageRole,
    content: str,
    *,
    model: str | None = None,
    reasoning: str | None = None,
    sources: list[dict] | None = None,
) -> Message:
    """Insert any message and bump the chat's updated_at atomically."""
    with transaction(db):
        message = Message(
            chat_id=chat_id,
            role=role,
            content=content,
            model=model,
            reasoning=reasoning,
            sources=sources,
            created_at=utcnow(),
        )
        db.add(message)
        chat = db.get(Chat, chat_id)
        if chat is not None:
            chat.updated_at = utcnow()
    return message


# =============================================================================
# Update and delete
# =============================================================================


def update_chat_title(db: Session, user_id: str, chat_id: str, title: str) -> ChatOut:
    chat = get_owned_chat(db, user_id, chat_id)
    with transaction(db):
        chat.title = title
        chat.updated_at = utcnow()
    return ChatOut.model_validate(chat)


def delete_chat(
    db: Session,
    runner: BackgroundRunner,
    storage: StorageClientBase,
    user_id: str,
    chat_id: str,
) -> None:
    """Delete a chat with its messages and attachment rows.

    Rows go synchronously; blobs no longer referenced go in the background.
    """
    chat = get_owned_chat(db, user_id, chat_id)
    paths = list(
        db.scalars(
            select(Attachment.file_path)
            .join(Message, Message.id == Attachment.message_id)
            .where(Message.chat_id == chat.id)
        )
    )

    with transaction(db):
        db.delete(chat)

    logger.info("chat_deleted", chat_id=chat_id, attachment_count=len(paths))
    schedule_blob_cleanup(runner, storage, paths)


# =============================================================================
# Branching
# =============================================================================


def branch_chat(db: Session, user_id: str, chat_id: str, message_id: str) -> str:
    """Copy messages up to and including message_id into a new chat.

    Attachment rows are copied and point at the same blobs. Temporary ids
    are not copied. Returns the new chat id.

    Raises:
        NotFoundError: If the chat or the message is not found.
    """
    original = get_owned_chat(db, user_id, chat_id)
    messages = list_messages(db, original.id)

    index = next((i for i, m in enumerate(messages) if m.id == message_id), None)
    if index is None:
        raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")

    with transaction(db):
        branch = Chat(
            user_id=user_id,
            title=f"{BRANCH_TITLE_PREFIX}{original.title}",
            is_branched=True,
        )
        db.add(branch)
        db.flush()

        for source in messages[: index + 1]:
            copy = Message(
                chat_id=branch.id,
                role=source.role,
                content=source.content,
                model=source.model,
                reasoning=source.reasoning,
                sources=source.sources,
                has_web_search=source.has_web_search,
                has_attachments=source.has_attachments,
                created_at=utcnow(),
            )
            db.add(copy)
            db.flush()
            for att in source.attachments:
                db.add(
                    Attachment(
                        message_id=copy.id,
                        user_id=user_id,
                        file_name=att.file_name,
                        file_type=att.file_type,
                        file_size=att.file_size,
                        file_path=att.file_path,
                    )
                )

    logger.info("chat_branched", chat_id=chat_id, branch_chat_id=branch.id, copied=index + 1)
    return branch.id


# =============================================================================
# Sharing
# =============================================================================


def _new_share_path() -> str:
    return "".join(secrets.choice(SHARE_PATH_ALPHABET) for _ in range(SHARE_PATH_LENGTH))


def _share_out(share_path: str) -> ShareOut:
    return ShareOut(share_path=share_path, share_url=f"{SHARE_URL_PREFIX}{share_path}")


def share_chat(db: Session, user_id: str, chat_id: str) -> ShareOut:
    """Make a chat publicly readable. Reuses an existing share path.

    Raises:
        ApiError: E_INTERNAL if no unused path was found in 10 attempts.
    """
    chat = get_owned_chat(db, user_id, chat_id)
    if chat.share_path:
        return _share_out(chat.share_path)

    for _ in range(SHARE_PATH_MAX_ATTEMPTS):
        candidate = _new_share_path()
        if db.scalar(select(Chat.id).where(Chat.share_path == candidate)) is None:
            break
    else:
        raise ApiError(ApiErrorCode.E_INTERNAL, "Failed to generate a unique share link")

    with transaction(db):
        chat.share_path = candidate
        chat.updated_at = utcnow()

    logger.info("chat_shared", chat_id=chat_id)
    return _share_out(candidate)


def unshare_chat(db: Session, user_id: str, chat_id: str) -> None:
    chat = get_owned_chat(db, user_id, chat_id)
    with transaction(db):
        chat.share_path = None
        chat.updated_at = utcnow()
    logger.info("chat_unshared", chat_id=chat_id)


def get_share_status(db: Session, user_id: str, chat_id: str) -> ShareStatusOut:
    chat = get_owned_chat(db, user_id, chat_id)
    if not chat.share_path:
        return ShareStatusOut(is_shared=False)
    return ShareStatusOut(
        is_shared=True,
        share_path=chat.share_path,
        share_url=f"{SHARE_URL_PREFIX}{chat.share_path}",
    )


def get_shared_chat(db: Session, share_path: str) -> SharedChatOut:
    """Public read-only view of a shared chat, system messages excluded.

    Raises:
        NotFoundError: If no chat is shared under this path.
    """
    chat = db.scalar(select(Chat).where(Chat.share_path == share_path))
    if chat is None:
        raise NotFoundError(ApiErrorCode.E_CHAT_NOT_FOUND, "Shared chat not found")
    messages = list_messages(db, chat.id, include_system=False)
    return SharedChatOut(
        title=chat.title,
        created_at=chat.created_at,
        updated_at=chat.updated_at,
        messages=[MessageOut.model_validate(m) for m in messages],
    )
