"""Completion reconciliation and history rewriting.

After a stream ends naturally:
- the assistant message is persisted (content, model, reasoning, URL sources)
- generated files are stored and linked to it in the background

History rewriting (edit / truncate) deletes every later message and its
attachment rows in one transaction with the content rewrite and the chat
timestamp bump. Blob cleanup happens afterwards, off the request path.
No optimistic concurrency: the last writer wins.
"""

import time
from collections.abc import Sequence

from sqlalchemy.orm import Session, sessionmaker

from chatrelay.background import BackgroundRunner
from chatrelay.db.models import Message, MessageRole, utcnow
from chatrelay.db.session import session_scope, transaction
from chatrelay.errors import ApiErrorCode, InvalidRequestError, NotFoundError
from chatrelay.logging import get_logger
from chatrelay.services.attachments import (
    UploadedFile,
    persist_attachments,
    schedule_blob_cleanup,
)
from chatrelay.services.chats import get_owned_chat, list_messages, save_message
from chatrelay.services.dispatcher import CompletionResult
from chatrelay.services.llm.types import GeneratedFile
from chatrelay.storage.client import StorageClientBase
from chatrelay.storage.paths import generated_file_name

logger = get_logger(__name__)


# =============================================================================
# Stream completion
# =============================================================================


def source_records(result: CompletionResult) -> list[dict] | None:
    """URL citations as stored on the message; None when there are none."""
    records = [{"title": s.title or "", "url": s.url} for s in result.sources if s.url]
    return records or None


def on_stream_complete(
    session_factory: sessionmaker[Session] | None,
    storage: StorageClientBase,
    runner: BackgroundRunner,
    *,
    chat_id: str,
    user_id: str,
    model_key: str,
    result: CompletionResult,
) -> str:
    """Persist the assistant reply of a finished stream. Returns its message id.

    Called once per dispatch, only after the provider stream ended on its
    own. Generated files are handed to the background runner; their
    failure never reaches the caller.
    """
    with session_scope(session_factory) as db:
        message = save_message(
            db,
            chat_id,
            MessageRole.assistant,
            result.text,
            model=model_key,
            reasoning=result.reasoning,
            sources=source_records(result),
        )
        message_id = message.id

    logger.info(
        "assistant_message_saved",
        message_id=message_id,
        chars=len(result.text),
        source_count=len(result.sources),
        file_count=len(result.files),
    )

    if result.files:
        runner.submit(
            "process_generated_files",
            process_generated_files,
            storage,
            chat_id,
            message_id,
            user_id,
            list(result.files),
            session_factory,
        )
    return message_id


def process_generated_files(
    storage: StorageClientBase,
    chat_id: str,
    message_id: str,
    user_id: str,
    files: Sequence[GeneratedFile],
    session_factory: sessionmaker[Session] | None = None,
    epoch_ms: int | None = None,
) -> int:
    """Store model-generated files as attachments of the assistant message.

    Names are generated-image-{epoch_ms}-{n}{ext}, ext from the MIME type.
    Returns the number of attachment rows written.
    """
    if epoch_ms is None:
        epoch_ms = int(time.time() * 1000)

    uploads: list[UploadedFile] = []
    for index, generated in enumerate(files):
        if not generated.data:
            logger.warning("generated_file_empty", message_id=message_id, index=index)
            continue
        uploads.append(
            UploadedFile(
                name=generated_file_name(index, generated.mime_type, epoch_ms),
                content_type=generated.mime_type,
                data=generated.data,
            )
        )
    return persist_attachments(storage, chat_id, message_id, user_id, uploads, session_factory)


# =============================================================================
# History rewriting
# =============================================================================


def _delete_messages(db: Session, messages: Sequence[Message]) -> list[str]:
    """Delete messages (attachments cascade) and return the blob paths they held."""
    paths = [att.file_path for m in messages for att in m.attachments]
    for message in messages:
        db.delete(message)
    return paths


def edit_message(
    db: Session,
    runner: BackgroundRunner,
    storage: StorageClientBase,
    *,
    user_id: str,
    chat_id: str,
    content: str,
    message_id: str | None = None,
    temp_id: str | None = None,
) -> int:
    """Rewrite a user message and drop everything after it.

    The target is matched by durable id or by the client's temporary id.
    Returns the number of messages removed.

    Raises:
        InvalidRequestError: No target id, blank content, or not a user message.
        NotFoundError: Chat or message not found.
    """
    if not message_id and not temp_id:
        raise InvalidRequestError(message="Message id is required")
    content = content.strip()
    if not content:
        raise InvalidRequestError(message="Message content is required")

    chat = get_owned_chat(db, user_id, chat_id)
    messages = list_messages(db, chat.id)

    index = next(
        (
            i
            for i, m in enumerate(messages)
            if (message_id and m.id == message_id) or (temp_id and m.temporary_id == temp_id)
        ),
        None,
    )
    if index is None:
        raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")

    target = messages[index]
    if target.role != MessageRole.user:
        raise InvalidRequestError(
            ApiErrorCode.E_MESSAGE_NOT_EDITABLE, "Only user messages can be edited"
        )

    later = messages[index + 1:]
    with transaction(db):
        target.content = content
        paths = _delete_messages(db, later)
        chat.updated_at = utcnow()

    logger.info("message_edited", message_id=target.id, removed=len(later))
    schedule_blob_cleanup(runner, storage, paths)
    return len(later)


def truncate_from_index(
    db: Session,
    runner: BackgroundRunner,
    storage: StorageClientBase,
    *,
    user_id: str,
    chat_id: str,
    index: int,
) -> int:
    """Delete the message at a visible index and everything after it.

    The index counts the messages the client sees, system messages excluded.
    Returns the number of messages removed.

    Raises:
        InvalidRequestError: index is not a non-negative integer.
        NotFoundError: Chat not found, or index past the last message.
    """
    if isinstance(index, bool) or not isinstance(index, int) or index < 0:
        raise InvalidRequestError(message="A valid message index is required")

    chat = get_owned_chat(db, user_id, chat_id)
    visible = list_messages(db, chat.id, include_system=False)
    if index >= len(visible):
        raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message index out of range")

    target = visible[index]
    messages = list_messages(db, chat.id)
    doomed = messages[messages.index(target):]

    with transaction(db):
        paths = _delete_messages(db, doomed)
        chat.updated_at = utcnow()

    logger.info("messages_truncated", chat_id=chat_id, index=index, removed=len(doomed))
    schedule_blob_cleanup(runner, storage, paths)
    return len(doomed)
