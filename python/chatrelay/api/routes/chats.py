"""Chat routes.

Routes are transport-only: each calls into the chat, reconciler or
streaming services.

- GET /chats: List the viewer's chats grouped by recency
- POST /chats: Create a chat from its first message (multipart)
- GET /chats/{id}: Chat with its visible messages
- POST /chats/{id}: Append the newest message and stream the reply (SSE)
- PATCH /chats/{id}: Rename
- DELETE /chats/{id}: Delete with messages and attachments
- PUT /chats/{id}/messages: Edit a user message, dropping later ones
- DELETE /chats/{id}/messages: Truncate history from a visible index
- POST /chats/{id}/branch: Copy history up to a message into a new chat
- POST /chats/{id}/title: Generate a title
- POST/DELETE /chats/{id}/share, GET /chats/{id}/share-status: Sharing

All routes require authentication.
Response envelope: {"data": ...}
Error envelope: {"error": {"code": "...", "message": "...", "request_id": "..."}}
"""

from typing import Annotated

import httpx
from fastapi import APIRouter, Depends, File, Form, Response, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from chatrelay.api.deps import (
    get_db,
    get_dispatcher,
    get_http_client,
    get_llm_router,
    get_registry,
    get_runner,
    get_session_factory,
    get_storage,
)
from chatrelay.auth.middleware import Viewer, get_viewer
from chatrelay.background import BackgroundRunner
from chatrelay.config import get_settings
from chatrelay.errors import ApiErrorCode, InvalidRequestError
from chatrelay.logging import set_chat_id
from chatrelay.responses import success_response
from chatrelay.schemas.chats import (
    BranchChatRequest,
    EditMessageRequest,
    RenameChatRequest,
    StreamChatRequest,
    TruncateMessagesRequest,
)
from chatrelay.services import chats as chats_service
from chatrelay.services import reconciler
from chatrelay.services.attachments import UploadedFile
from chatrelay.services.conversation_assembly import (
    assemble,
    materialize_history,
    save_user_message_if_needed,
)
from chatrelay.services.dispatcher import Dispatcher
from chatrelay.services.llm import LLMRouter
from chatrelay.services.model_registry import ModelRegistry
from chatrelay.services.send_message_stream import ChatStream
from chatrelay.services.titles import generate_title
from chatrelay.storage.client import StorageClientBase

router = APIRouter(tags=["chats"])

DbDep = Annotated[Session, Depends(get_db)]
ViewerDep = Annotated[Viewer, Depends(get_viewer)]
RunnerDep = Annotated[BackgroundRunner, Depends(get_runner)]
StorageDep = Annotated[StorageClientBase, Depends(get_storage)]


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def _read_uploads(files: list[UploadFile] | None) -> list[UploadedFile]:
    """Read multipart uploads into memory, enforcing the per-file size limit.

    Raises:
        ApiError: E_FILE_TOO_LARGE if any file exceeds MAX_UPLOAD_BYTES.
    """
    limit = get_settings().max_upload_bytes
    uploads: list[UploadedFile] = []
    for upload in files or []:
        data = upload.file.read()
        if len(data) > limit:
            raise InvalidRequestError(
                ApiErrorCode.E_FILE_TOO_LARGE,
                f"File {upload.filename} exceeds the {limit} byte limit",
            )
        uploads.append(
            UploadedFile(
                name=upload.filename or "file",
                content_type=upload.content_type or "application/octet-stream",
                data=data,
            )
        )
    return uploads


@router.get("/chats")
def list_chats(viewer: ViewerDep, db: DbDep, search: str | None = None) -> dict:
    """List the viewer's chats, newest first, bucketed by updated_at.

    Returns:
        {"data": {"today": [...], "yesterday": [...], "last7Days": [...],
                  "last30Days": [...], "older": [...]}}
    """
    chats = chats_service.get_user_chats(db, viewer.user_id, search=search)
    return success_response(_dump(chats_service.group_chats_by_date(chats)))


@router.post("/chats", status_code=201)
def create_chat(
    viewer: ViewerDep,
    db: DbDep,
    runner: RunnerDep,
    storage: StorageDep,
    model: Annotated[str, Form(min_length=1)],
    content: Annotated[str, Form()] = "",
    is_search_enabled: Annotated[bool, Form(alias="isSearchEnabled")] = False,
    temporary_id: Annotated[str | None, Form(alias="temporaryId")] = None,
    files: Annotated[list[UploadFile] | None, File()] = None,
) -> dict:
    """Create a chat from its first message.

    Returns:
        201 Created: {"data": {"id": "<chat id>"}}

    Errors:
        E_INVALID_REQUEST (400): Blank content or missing model
        E_FILE_TOO_LARGE (400): An upload exceeds the size limit
    """
    uploads = _read_uploads(files)
    chat_id = chats_service.create_chat(
        db,
        runner,
        storage,
        viewer.user_id,
        content,
        model,
        search_enabled=is_search_enabled,
        files=uploads,
        temporary_id=temporary_id,
    )
    return success_response({"id": chat_id})


@router.get("/chats/{chat_id}")
def get_chat(chat_id: str, viewer: ViewerDep, db: DbDep) -> dict:
    """Chat with its messages (system messages excluded) and attachments.

    Errors:
        E_CHAT_NOT_FOUND (404): Chat doesn't exist or not owned by viewer
    """
    return success_response(_dump(chats_service.get_user_chat(db, viewer.user_id, chat_id)))


@router.post("/chats/{chat_id}")
async def stream_reply(
    chat_id: str,
    body: StreamChatRequest,
    viewer: ViewerDep,
    db: DbDep,
    runner: RunnerDep,
    storage: StorageDep,
    client: Annotated[httpx.AsyncClient, Depends(get_http_client)],
    dispatcher: Annotated[Dispatcher, Depends(get_dispatcher)],
) -> StreamingResponse:
    """Persist the newest user message and stream the assistant reply.

    Everything that can be rejected (ownership, model, credential, the
    provider refusing the connection) is rejected with a JSON error before
    the first byte of the event stream.

    Errors:
        E_CHAT_NOT_FOUND (404): Chat doesn't exist or not owned by viewer
        E_INVALID_MODEL (400): Model is neither in the catalog nor served locally
        E_NO_CREDENTIAL (400): No credential reaches the model's provider
        E_UPSTREAM (500): Provider failed before producing output
    """
    set_chat_id(chat_id)
    await run_in_threadpool(chats_service.get_owned_chat, db, viewer.user_id, chat_id)

    saved_files = await save_user_message_if_needed(
        db,
        client,
        runner,
        storage,
        user_id=viewer.user_id,
        chat_id=chat_id,
        messages=body.messages,
        model=body.model,
        search_enabled=body.is_search_enabled,
    )
    prefetched = {len(body.messages) - 1: saved_files} if saved_files else None
    parts_by_index = await materialize_history(client, storage, body.messages, prefetched)
    turns = assemble(body.messages, parts_by_index)

    plan = await dispatcher.prepare(
        db, viewer.user_id, body.model, turns, search_enabled=body.is_search_enabled
    )
    stream = ChatStream(
        dispatcher,
        plan,
        runner,
        storage,
        get_session_factory(),
        chat_id=chat_id,
        user_id=viewer.user_id,
    )
    await stream.start()

    return StreamingResponse(
        stream.events(),
        media_type="text/event-stream; charset=utf-8",
        headers={
            "Cache-Control": "no-cache, no-transform",
            "X-Accel-Buffering": "no",
        },
    )


@router.patch("/chats/{chat_id}")
def rename_chat(chat_id: str, body: RenameChatRequest, viewer: ViewerDep, db: DbDep) -> dict:
    chat = chats_service.update_chat_title(db, viewer.user_id, chat_id, body.title)
    return success_response(_dump(chat))


@router.delete("/chats/{chat_id}", status_code=204)
def delete_chat(
    chat_id: str, viewer: ViewerDep, db: DbDep, runner: RunnerDep, storage: StorageDep
) -> Response:
    """Delete a chat; blobs no longer referenced are removed in the background.

    Returns:
        204 No Content
    """
    chats_service.delete_chat(db, runner, storage, viewer.user_id, chat_id)
    return Response(status_code=204)


@router.put("/chats/{chat_id}/messages")
def edit_message(
    chat_id: str,
    body: EditMessageRequest,
    viewer: ViewerDep,
    db: DbDep,
    runner: RunnerDep,
    storage: StorageDep,
) -> dict:
    """Rewrite a user message and delete every message after it.

    Returns:
        {"data": {"removed": N}}

    Errors:
        E_MESSAGE_NOT_FOUND (404): No message with that id or temporary id
        E_MESSAGE_NOT_EDITABLE (400): Target is not a user message
    """
    removed = reconciler.edit_message(
        db,
        runner,
        storage,
        user_id=viewer.user_id,
        chat_id=chat_id,
        content=body.content,
        message_id=body.message_id,
        temp_id=body.temp_message_id,
    )
    return success_response({"removed": removed})


@router.delete("/chats/{chat_id}/messages")
def truncate_messages(
    chat_id: str,
    body: TruncateMessagesRequest,
    viewer: ViewerDep,
    db: DbDep,
    runner: RunnerDep,
    storage: StorageDep,
) -> dict:
    """Delete the message at a visible index and everything after it.

    Returns:
        {"data": {"removed": N}}
    """
    removed = reconciler.truncate_from_index(
        db,
        runner,
        storage,
        user_id=viewer.user_id,
        chat_id=chat_id,
        index=body.message_index,
    )
    return success_response({"removed": removed})


@router.post("/chats/{chat_id}/branch", status_code=201)
def branch_chat(chat_id: str, body: BranchChatRequest, viewer: ViewerDep, db: DbDep) -> dict:
    new_chat_id = chats_service.branch_chat(db, viewer.user_id, chat_id, body.message_id)
    return success_response({"id": new_chat_id})


@router.post("/chats/{chat_id}/title")
async def generate_chat_title(
    chat_id: str,
    viewer: ViewerDep,
    db: DbDep,
    llm_router: Annotated[LLMRouter, Depends(get_llm_router)],
    registry: Annotated[ModelRegistry, Depends(get_registry)],
) -> dict:
    """Generate a title from the first user message.

    Errors:
        E_NO_CREDENTIAL (400): No title model is reachable
        E_UPSTREAM (500): Provider failure
    """
    chat = await generate_title(
        db, llm_router, registry, user_id=viewer.user_id, chat_id=chat_id
    )
    return success_response(_dump(chat))


@router.post("/chats/{chat_id}/share")
def share_chat(chat_id: str, viewer: ViewerDep, db: DbDep) -> dict:
    """Make the chat publicly readable. Idempotent: reuses the share path."""
    return success_response(_dump(chats_service.share_chat(db, viewer.user_id, chat_id)))


@router.delete("/chats/{chat_id}/share", status_code=204)
def unshare_chat(chat_id: str, viewer: ViewerDep, db: DbDep) -> Response:
    chats_service.unshare_chat(db, viewer.user_id, chat_id)
    return Response(status_code=204)


@router.get("/chats/{chat_id}/share-status")
def share_status(chat_id: str, viewer: ViewerDep, db: DbDep) -> dict:
    return success_response(_dump(chats_service.get_share_status(db, viewer.user_id, chat_id)))
