"""Blob serving.

GET /files/{path} accepts anonymous requests: a blob referenced by a shared
chat is public, anything else is readable by its owner only.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from chatrelay.api.deps import get_db, get_storage
from chatrelay.auth.middleware import Viewer, get_optional_viewer
from chatrelay.services.attachments import get_file_for_viewer
from chatrelay.storage.client import StorageClientBase

router = APIRouter(tags=["files"])

CACHE_CONTROL = "private, max-age=3600"


@router.get("/files/{path:path}")
def serve_file(
    path: str,
    db: Annotated[Session, Depends(get_db)],
    storage: Annotated[StorageClientBase, Depends(get_storage)],
    viewer: Annotated[Viewer | None, Depends(get_optional_viewer)],
) -> Response:
    """Stream a stored blob inline.

    Errors:
        E_UNAUTHENTICATED (401): Private file requested without a token
        E_FORBIDDEN (403): Viewer is not the owner
        E_FILE_NOT_FOUND (404): No attachment row or no blob
    """
    served = get_file_for_viewer(db, storage, path, viewer.user_id if viewer else None)
    file_name = served.file_name.replace('"', "")
    return Response(
        content=served.content,
        media_type=served.content_type,
        headers={
            "Content-Disposition": f'inline; filename="{file_name}"',
            "Cache-Control": CACHE_CONTROL,
        },
    )
