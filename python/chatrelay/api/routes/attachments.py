"""Attachment routes.

- GET /messages/{id}/attachments: Attachments of one message
- GET /attachments: The viewer's attachments with their total size
- DELETE /attachments/{id}: Delete one attachment
- POST /attachments/delete: Delete several attachments at once

Rows are deleted synchronously; blobs no longer referenced by any row are
removed in the background.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from chatrelay.api.deps import get_db, get_runner, get_storage
from chatrelay.auth.middleware import Viewer, get_viewer
from chatrelay.background import BackgroundRunner
from chatrelay.responses import success_response
from chatrelay.schemas.chats import DeleteAttachmentsRequest
from chatrelay.services import attachments as attachments_service
from chatrelay.storage.client import StorageClientBase

router = APIRouter(tags=["attachments"])


def _dump_all(items) -> list[dict]:
    return [item.model_dump(mode="json", by_alias=True) for item in items]


@router.get("/messages/{message_id}/attachments")
def list_message_attachments(
    message_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    attachments = attachments_service.get_message_attachments(db, viewer.user_id, message_id)
    return success_response(_dump_all(attachments))


@router.get("/attachments")
def list_attachments(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """List the viewer's attachments, newest first.

    Returns:
        {"data": {"attachments": [...], "totalSize": N}}
    """
    attachments, total = attachments_service.list_user_attachments(db, viewer.user_id)
    return success_response({"attachments": _dump_all(attachments), "totalSize": total})


@router.delete("/attachments/{attachment_id}", status_code=204)
def delete_attachment(
    attachment_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    runner: Annotated[BackgroundRunner, Depends(get_runner)],
    storage: Annotated[StorageClientBase, Depends(get_storage)],
) -> Response:
    attachments_service.delete_attachment(db, runner, storage, viewer.user_id, attachment_id)
    return Response(status_code=204)


@router.post("/attachments/delete")
def delete_attachments(
    body: DeleteAttachmentsRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    runner: Annotated[BackgroundRunner, Depends(get_runner)],
    storage: Annotated[StorageClientBase, Depends(get_storage)],
) -> dict:
    """Delete several attachments. All must belong to the viewer.

    Returns:
        {"data": {"deleted": N}}

    Errors:
        E_ATTACHMENT_NOT_FOUND (404): Any id is missing or not owned
    """
    deleted = attachments_service.delete_attachments(
        db, runner, storage, viewer.user_id, body.attachment_ids
    )
    return success_response({"deleted": deleted})
