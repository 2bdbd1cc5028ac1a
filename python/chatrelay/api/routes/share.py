"""Public shared-chat view.

GET /share/{share_path} needs no authentication; the auth middleware lets
the prefix through.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from chatrelay.api.deps import get_db
from chatrelay.responses import success_response
from chatrelay.services.chats import get_shared_chat

router = APIRouter(tags=["share"])


@router.get("/share/{share_path}")
def read_shared_chat(share_path: str, db: Annotated[Session, Depends(get_db)]) -> dict:
    """Read-only view of a shared chat, system messages excluded.

    Errors:
        E_CHAT_NOT_FOUND (404): Nothing is shared under this path
    """
    chat = get_shared_chat(db, share_path)
    return success_response(chat.model_dump(mode="json", by_alias=True))
