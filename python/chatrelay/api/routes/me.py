"""Current user endpoints.

Returns and updates the authenticated viewer's own settings.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chatrelay.api.deps import get_db
from chatrelay.auth.middleware import Viewer, get_viewer
from chatrelay.responses import success_response
from chatrelay.schemas.users import UpdateMeRequest
from chatrelay.services import users as users_service

router = APIRouter(tags=["user"])


@router.get("/me")
def get_me(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Get the viewer's account, grants and settings."""
    me = users_service.get_me(db, viewer.user_id)
    return success_response(me.model_dump(mode="json", by_alias=True))


@router.patch("/me")
def update_me(
    body: UpdateMeRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Update language and default system prompt. Omitted fields are kept.

    Errors:
        E_FORBIDDEN (403): Changing the system prompt without
            settings:update:system-prompt
    """
    me = users_service.update_me(
        db,
        viewer.user_id,
        viewer.grants,
        language=body.language,
        default_system_prompt=body.default_system_prompt,
        fields_set=body.model_fields_set,
    )
    return success_response(me.model_dump(mode="json", by_alias=True))
