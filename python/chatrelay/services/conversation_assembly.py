"""Conversation assembly: client history to provider turns.

Each message maps 1:1 to a Turn by role. System and assistant turns carry
flat text; a user turn carries flat text unless the message has
attachments, in which case it carries the materialized parts (text first).

Before assembly, a fresh user submission (the last message, user role, no
chat id) is persisted so that the stored history and the provider call
observe the same message set.
"""

from collections.abc import Mapping, Sequence
from typing import Protocol

import httpx
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from chatrelay.background import BackgroundRunner
from chatrelay.logging import get_logger
from chatrelay.services.attachments import (
    SavedRef,
    UploadedFile,
    UrlUpload,
    build_parts,
    fetch_uploads,
    materialize_saved,
    materialize_uploads,
    parts_from_uploads,
)
from chatrelay.services.chats import add_message_to_chat
from chatrelay.services.llm.types import ContentPart, Turn
from chatrelay.storage.client import StorageClientBase

logger = get_logger(__name__)

ROLES = ("system", "user", "assistant")


class HistoryMessage(Protocol):
    """Shape of one history entry as sent by the client."""

    id: str | None
    role: str
    content: str
    chat_id: str | None
    attachments: Sequence[SavedRef]
    experimental_attachments: Sequence[UrlUpload]


def has_attachments(message: HistoryMessage) -> bool:
    return bool(message.attachments) or bool(message.experimental_attachments)


def is_fresh_submission(messages: Sequence[HistoryMessage]) -> bool:
    """True when the newest message is a user message not yet stored."""
    if not messages:
        return False
    last = messages[-1]
    return last.role == "user" and not last.chat_id


async def save_user_message_if_needed(
    db: Session,
    client: httpx.AsyncClient,
    runner: BackgroundRunner,
    storage: StorageClientBase,
    *,
    user_id: str,
    chat_id: str,
    messages: Sequence[HistoryMessage],
    model: str,
    search_enabled: bool,
) -> list[UploadedFile] | None:
    """Persist the newest message when it is a fresh user submission.

    Its client uploads are read once here; the returned files are reused
    when materializing the same message, so remote URLs are not fetched
    twice. Returns None when nothing was saved.
    """
    if not is_fresh_submission(messages):
        return None

    last = messages[-1]
    files = await fetch_uploads(client, last.experimental_attachments)
    message_id = await run_in_threadpool(
        add_message_to_chat,
        db,
        runner,
        storage,
        user_id,
        chat_id,
        last.content,
        model,
        search_enabled=search_enabled,
        files=files,
        temporary_id=last.id,
    )
    logger.info("user_message_saved", message_id=message_id, attachment_count=len(files))
    return files


async def materialize_history(
    client: httpx.AsyncClient,
    storage: StorageClientBase,
    messages: Sequence[HistoryMessage],
    prefetched: Mapping[int, Sequence[UploadedFile]] | None = None,
) -> dict[int, tuple[ContentPart, ...]]:
    """Content parts for every message that has attachments, keyed by index.

    prefetched maps a message index to uploads already read for it.
    """
    prefetched = prefetched or {}
    parts_by_index: dict[int, tuple[ContentPart, ...]] = {}
    for index, message in enumerate(messages):
        if not has_attachments(message):
            continue
        if index in prefetched:
            upload_parts = parts_from_uploads(prefetched[index])
        else:
            upload_parts = await materialize_uploads(client, message.experimental_attachments)
        saved_parts = await materialize_saved(storage, message.attachments)
        parts_by_index[index] = build_parts(message.content, upload_parts, saved_parts)
    return parts_by_index


def assemble(
    messages: Sequence[HistoryMessage],
    parts_by_index: Mapping[int, tuple[ContentPart, ...]] | None = None,
) -> list[Turn]:
    """One Turn per message, in order.

    Raises:
        ValueError: On a role outside system/user/assistant.
    """
    parts_by_index = parts_by_index or {}
    turns: list[Turn] = []
    for index, message in enumerate(messages):
        role = message.role
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role!r}")
        if role == "user" and index in parts_by_index:
            turns.append(Turn(role="user", content=parts_by_index[index]))
        else:
            turns.append(Turn(role=role, content=message.content))
    return turns
