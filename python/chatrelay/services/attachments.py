"""Attachment service layer.

Materialization turns attachment references into provider content parts:
- saved attachments: read through the storage client
- client uploads: inline bytes, ``data:`` URLs, or remote http(s) URLs
  fetched with the shared httpx client
- ``image/*`` becomes an ImagePart, everything else a FilePart
- one failing item is logged and skipped; a batch never raises

Persistence of uploads and generated files runs on the background runner
after the owning message row is committed. Blob writes and deletes are not
transactional with the database: a dangling blob is acceptable, a row
pointing at a missing blob is a read-time 404.

Branched chats point several attachment rows at the same blob, so a blob is
only deleted once no row references it.
"""

import base64
import binascii
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import unquote_to_bytes, urlparse

import httpx
from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from chatrelay.background import BackgroundRunner
from chatrelay.db.models import Attachment, Chat, Message
from chatrelay.db.session import get_session_factory, session_scope, transaction
from chatrelay.errors import ApiError, ApiErrorCode, ForbiddenError, NotFoundError
from chatrelay.logging import get_logger
from chatrelay.schemas.chats import AttachmentOut
from chatrelay.services.llm.types import ContentPart, FilePart, ImagePart, TextPart
from chatrelay.storage.client import StorageClientBase, StorageError
from chatrelay.storage.paths import owner_segment

logger = get_logger(__name__)

DEFAULT_FETCH_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class UploadedFile:
    """Raw bytes of a client upload, ready to store or send."""

    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class SavedRef(Protocol):
    """Anything that names a stored blob: request refs or Attachment rows."""

    file_path: str
    file_name: str
    file_type: str


class UrlUpload(Protocol):
    name: str
    content_type: str
    url: str


# =============================================================================
# Materialization
# =============================================================================


def part_for(data: bytes, mime_type: str, file_name: str) -> ContentPart:
    """Classify by declared MIME type."""
    if mime_type.lower().startswith("image/"):
        return ImagePart(data=data, mime_type=mime_type)
    return FilePart(data=data, mime_type=mime_type, filename=file_name)


def decode_data_url(url: str) -> bytes:
    """Bytes of a ``data:[<mediatype>][;base64],<data>`` URL.

    Raises:
        ValueError: If the URL is malformed.
    """
    header, sep, payload = url.partition(",")
    if not sep or not header.startswith("data:"):
        raise ValueError("Malformed data URL")
    if header.endswith(";base64"):
        try:
            return base64.b64decode(payload, validate=True)
        except binascii.Error as e:
            raise ValueError("Malformed base64 payload") from e
    return unquote_to_bytes(payload)


async def fetch_upload(
    client: httpx.AsyncClient, upload: UrlUpload, timeout_s: float = DEFAULT_FETCH_TIMEOUT_S
) -> UploadedFile:
    """Read one URL-shaped upload into bytes.

    Raises:
        ValueError: Unsupported or malformed URL.
        httpx.HTTPError: Remote fetch failed.
    """
    if upload.url.startswith("data:"):
        data = decode_data_url(upload.url)
    else:
        scheme = urlparse(upload.url).scheme
        if scheme not in ("http", "https"):
            raise ValueError(f"Unsupported attachment URL scheme: {scheme or 'none'}")
        response = await client.get(upload.url, timeout=timeout_s)
        response.raise_for_status()
        data = response.content
    return UploadedFile(name=upload.name, content_type=upload.content_type, data=data)


async def fetch_uploads(
    client: httpx.AsyncClient, uploads: Iterable[UrlUpload | UploadedFile]
) -> list[UploadedFile]:
    """Read every upload, skipping (and logging) the ones that fail."""
    files: list[UploadedFile] = []
    for upload in uploads:
        if isinstance(upload, UploadedFile):
            files.append(upload)
            continue
        try:
            files.append(await fetch_upload(client, upload))
        except (ValueError, httpx.HTTPError) as e:
            logger.warning(
                "attachment_fetch_failed",
                file_name=upload.name,
                error_type=type(e).__name__,
                error=str(e),
            )
    return files


def parts_from_uploads(files: Iterable[UploadedFile]) -> list[ContentPart]:
    return [part_for(f.data, f.content_type, f.name) for f in files]


async def materialize_uploads(
    client: httpx.AsyncClient, uploads: Iterable[UrlUpload | UploadedFile]
) -> list[ContentPart]:
    """Content parts for client uploads, in input order."""
    return parts_from_uploads(await fetch_uploads(client, uploads))


async def materialize_saved(
    storage: StorageClientBase, refs: Iterable[SavedRef]
) -> list[ContentPart]:
    """Content parts for stored attachments, in input order.

    Unreadable blobs are logged and skipped.
    """
    parts: list[ContentPart] = []
    for ref in refs:
        try:
            data = await run_in_threadpool(storage.get_object, ref.file_path)
        except StorageError as e:
            logger.warning(
                "attachment_read_failed",
                file_name=ref.file_name,
                file_path=ref.file_path,
                error_code=e.code,
            )
            continue
        parts.append(part_for(data, ref.file_type, ref.file_name))
    return parts


def build_parts(
    text: str, upload_parts: Sequence[ContentPart], saved_parts: Sequence[ContentPart]
) -> tuple[ContentPart, ...]:
    """Text first (even when empty), then client uploads, then saved parts."""
    return (TextPart(text=text), *upload_parts, *saved_parts)


# =============================================================================
# Persistence (background)
# =============================================================================


def persist_attachments(
    storage: StorageClientBase,
    chat_id: str,
    message_id: str,
    user_id: str,
    files: Sequence[UploadedFile],
    session_factory: sessionmaker[Session] | None = None,
) -> int:
    """Write blobs and insert their attachment rows. Returns rows inserted.

    A file that fails to store is logged and skipped; the others still land.
    Runs off the request path (see schedule_attachment_persistence).
    """
    rows: list[Attachment] = []
    for f in files:
        try:
            path = storage.save(f.data, user_id, chat_id, f.name)
        except StorageError as e:
            logger.warning(
                "attachment_store_failed", chat_id=chat_id, file_name=f.name, error=e.message
            )
            continue
        rows.append(
            Attachment(
                message_id=message_id,
                user_id=user_id,
                file_name=f.name,
                file_type=f.content_type or "application/octet-stream",
                file_size=f.size,
                file_path=path,
            )
        )

    if not rows:
        return 0

    with session_scope(session_factory) as db, transaction(db):
        db.add_all(rows)

    logger.info("attachments_persisted", chat_id=chat_id, message_id=message_id, count=len(rows))
    return len(rows)


def schedule_attachment_persistence(
    runner: BackgroundRunner,
    storage: StorageClientBase,
    chat_id: str,
    message_id: str,
    user_id: str,
    files: Sequence[UploadedFile],
) -> None:
    if not files:
        return
    runner.submit(
        "persist_attachments",
        persist_attachments,
        storage,
        chat_id,
        message_id,
        user_id,
        list(files),
        get_session_factory(),
    )


def delete_unreferenced_blobs(
    storage: StorageClientBase,
    paths: Iterable[str],
    session_factory: sessionmaker[Session] | None = None,
) -> int:
    """Delete each blob no attachment row still points at. Returns count deleted."""
    deleted = 0
    with session_scope(session_factory) as db:
        for path in dict.fromkeys(paths):
            still_used = db.scalar(
                select(Attachment.id).where(Attachment.file_path == path).limit(1)
            )
            if still_used is not None:
                continue
            storage.delete_object(path)
            deleted += 1
    return deleted


def schedule_blob_cleanup(
    runner: BackgroundRunner, storage: StorageClientBase, paths: Iterable[str]
) -> None:
    """Fire-and-forget blob deletion after the rows are gone."""
    paths = list(paths)
    if not paths:
        return
    runner.submit(
        "delete_blobs", delete_unreferenced_blobs, storage, paths, get_session_factory()
    )


# =============================================================================
# Queries and management
# =============================================================================


def list_user_attachments(db: Session, user_id: str) -> tuple[list[AttachmentOut], int]:
    """The user's attachments, newest first, and their total size in bytes."""
    rows = db.scalars(
        select(Attachment)
        .where(Attachment.user_id == user_id)
        .order_by(Attachment.created_at.desc(), Attachment.id)
    )
    total = db.scalar(
        select(func.coalesce(func.sum(Attachment.file_size), 0)).where(
            Attachment.user_id == user_id
        )
    )
    return [AttachmentOut.model_validate(row) for row in rows], int(total or 0)


def get_message_attachments(db: Session, user_id: str, message_id: str) -> list[AttachmentOut]:
    """Attachments of a message in a chat the user owns.

    Raises:
        NotFoundError: If the message does not exist or is not visible.
    """
    message = db.scalar(
        select(Message)
        .join(Chat, Chat.id == Message.chat_id)
        .where(Message.id == message_id, Chat.user_id == user_id)
    )
    if message is None:
        raise NotFoundError(ApiErrorCode.E_MESSAGE_NOT_FOUND, "Message not found")
    return [AttachmentOut.model_validate(a) for a in message.attachments]


def delete_attachment(
    db: Session,
    runner: BackgroundRunner,
    storage: StorageClientBase,
    user_id: str,
    attachment_id: str,
) -> None:
    """Delete one of the user's attachments; the blob goes in the background.

    Raises:
        NotFoundError: If the attachment does not exist or is not owned.
    """
    deleted = delete_attachments(db, runner, storage, user_id, [attachment_id])
    if deleted == 0:
        raise NotFoundError(ApiErrorCode.E_ATTACHMENT_NOT_FOUND, "Attachment not found")


def delete_attachments(
    db: Session,
    runner: BackgroundRunner,
    storage: StorageClientBase,
    user_id: str,
    attachment_ids: Sequence[str],
) -> int:
    """Delete several attachments at once. All-or-nothing on ownership.

    Raises:
        NotFoundError: If any id is missing or owned by someone else.
    """
    wanted = set(attachment_ids)
    rows = list(
        db.scalars(
            select(Attachment).where(Attachment.id.in_(wanted), Attachment.user_id == user_id)
        )
    )
    if len(rows) != len(wanted):
        raise NotFoundError(
            ApiErrorCode.E_ATTACHMENT_NOT_FOUND, "Some attachments were not found"
        )

    paths = [row.file_path for row in rows]
    with transaction(db):
        for row in rows:
            db.delete(row)

    logger.info("attachments_deleted", count=len(rows))
    schedule_blob_cleanup(runner, storage, paths)
    return len(rows)


# =============================================================================
# File serving
# =============================================================================


@dataclass(frozen=True)
class ServedFile:
    content: bytes
    file_name: str
    content_type: str


def get_file_for_viewer(
    db: Session, storage: StorageClientBase, path: str, viewer_id: str | None
) -> ServedFile:
    """Resolve a blob path to its bytes under the access rules.

    - public when any chat referencing the blob is shared
    - otherwise only its owner (first path segment and row owner) may read it

    Raises:
        NotFoundError: E_FILE_NOT_FOUND if no row or no blob.
        ApiError: E_UNAUTHENTICATED for anonymous access to a private file.
        ForbiddenError: If the viewer is not the owner.
    """
    rows = db.execute(
        select(Attachment, Chat.share_path)
        .join(Message, Message.id == Attachment.message_id)
        .join(Chat, Chat.id == Message.chat_id)
        .where(Attachment.file_path == path)
        .order_by(Attachment.created_at, Attachment.id)
    ).all()
    if not rows:
        raise NotFoundError(ApiErrorCode.E_FILE_NOT_FOUND, "File not found")

    attachment = rows[0][0]
    is_shared = any(share_path for _, share_path in rows)
    if not is_shared:
        if viewer_id is None:
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Authentication required")
        owns_row = any(row.user_id == viewer_id for row, _ in rows)
        if owner_segment(path) != viewer_id or not owns_row:
            raise ForbiddenError(message="Access denied")

    try:
        content = storage.get_object(path)
    except StorageError as e:
        if e.code == ApiErrorCode.E_FILE_NOT_FOUND.value:
            raise NotFoundError(ApiErrorCode.E_FILE_NOT_FOUND, "File not found") from e
        raise ApiError(ApiErrorCode.E_STORAGE_ERROR, "Failed to read file") from e

    return ServedFile(
        content=content,
        file_name=attachment.file_name,
        content_type=attachment.file_type or "application/octet-stream",
    )
