"""Provider credential routes.

Routes are transport-only: each calls exactly one service function.

- GET /keys: List the viewer's credentials (safe fields only, no secrets)
- PUT /keys/{provider}: Upsert the secret for a hosted provider
- PUT /keys/{provider}/url: Upsert the endpoint URL of a local server
- PATCH /keys/{provider}/scope: Move a secret between personal and shared
- DELETE /keys/{provider}: Delete the credential

All routes require authentication.

Security invariants:
- Response never includes encrypted_key, key_nonce, master_key_version
- Plaintext keys are never logged
- Keys are encrypted before storage
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Response
from sqlalchemy.orm import Session

from chatrelay.api.deps import get_db
from chatrelay.auth.middleware import Viewer, get_viewer
from chatrelay.responses import success_response
from chatrelay.schemas.keys import SaveApiKeyRequest, SaveApiUrlRequest, UpdateScopeRequest
from chatrelay.services import user_keys as user_keys_service

router = APIRouter(tags=["keys"])


@router.get("/keys")
def list_keys(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """List the viewer's credentials. Empty list is valid.

    Returns:
        {"data": [ApiKeyOut, ...]}
    """
    keys = user_keys_service.list_api_keys(db, viewer.user_id)
    return success_response([k.model_dump(mode="json", by_alias=True) for k in keys])


@router.put("/keys/{provider}", status_code=201)
def save_key(
    provider: str,
    body: SaveApiKeyRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    response: Response,
) -> dict:
    """Add or replace the secret for a provider.

    Returns:
        201 Created (new credential): {"data": ApiKeyOut}
        200 OK (replaced): {"data": ApiKeyOut}

    Errors:
        E_INVALID_PROVIDER (400): Provider takes no secret
        E_FORBIDDEN (403): Missing grant for the requested scope
    """
    key_out, is_created = user_keys_service.save_api_key(
        db, viewer.user_id, viewer.grants, provider, body.api_key, scope=body.scope
    )
    if not is_created:
        response.status_code = 200
    return success_response(key_out.model_dump(mode="json", by_alias=True))


@router.put("/keys/{provider}/url", status_code=201)
def save_url(
    provider: str,
    body: SaveApiUrlRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    response: Response,
) -> dict:
    """Add or replace a local server URL.

    Errors:
        E_INVALID_PROVIDER (400): Provider is not lmstudio or ollama
        E_INVALID_URL (400): Not an absolute http(s) URL
    """
    key_out, is_created = user_keys_service.save_api_url(
        db, viewer.user_id, viewer.grants, provider, body.url
    )
    if not is_created:
        response.status_code = 200
    return success_response(key_out.model_dump(mode="json", by_alias=True))


@router.patch("/keys/{provider}/scope")
def update_scope(
    provider: str,
    body: UpdateScopeRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    key_out = user_keys_service.update_api_key_scope(
        db, viewer.user_id, viewer.grants, provider, body.scope
    )
    return success_response(key_out.model_dump(mode="json", by_alias=True))


@router.delete("/keys/{provider}", status_code=204)
def delete_key(
    provider: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> Response:
    """Delete the viewer's credential for a provider.

    Errors:
        E_KEY_NOT_FOUND (404): No credential for this provider
    """
    user_keys_service.delete_api_key(db, viewer.user_id, provider)
    return Response(status_code=204)
