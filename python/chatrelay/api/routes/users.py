"""User administration routes.

- GET /users: List accounts (users:view)
- POST /users: Create an account (users:create)
- PATCH /users/{id}/grants: Replace another account's grants (users:update)
- DELETE /users/{id}: Delete another account (users:delete)
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from chatrelay.api.deps import get_db, get_runner, get_storage
from chatrelay.auth.middleware import Viewer, get_viewer
from chatrelay.background import BackgroundRunner
from chatrelay.responses import success_response
from chatrelay.schemas.users import CreateUserRequest, UpdateGrantsRequest
from chatrelay.services import users as users_service
from chatrelay.storage.client import StorageClientBase

router = APIRouter(tags=["users"])


@router.get("/users")
def list_users(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    users = users_service.list_users(db, viewer.grants)
    return success_response([u.model_dump(mode="json", by_alias=True) for u in users])


@router.post("/users", status_code=201)
def create_user(
    body: CreateUserRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Create an account ahead of its first sign-in.

    Errors:
        E_FORBIDDEN (403): Missing users:create
        E_INVALID_GRANT (400): Unknown grant name
        E_POLICY_VIOLATION (403): No key grants and no shared credential exists
        E_USERNAME_TAKEN (409): Username or id already in use
    """
    user = users_service.create_user(
        db, viewer.grants, body.username, body.grants, user_id=body.id
    )
    return success_response(user.model_dump(mode="json", by_alias=True))


@router.patch("/users/{user_id}/grants")
def update_grants(
    user_id: str,
    body: UpdateGrantsRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    user = users_service.update_user_grants(
        db, viewer.user_id, viewer.grants, user_id, body.grants
    )
    return success_response(user.model_dump(mode="json", by_alias=True))


@router.delete("/users/{user_id}", status_code=204)
def delete_user(
    user_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    runner: Annotated[BackgroundRunner, Depends(get_runner)],
    storage: Annotated[StorageClientBase, Depends(get_storage)],
) -> Response:
    users_service.delete_user(db, runner, storage, viewer.user_id, viewer.grants, user_id)
    return Response(status_code=204)
