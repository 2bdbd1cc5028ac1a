"""Model catalog route.

GET /models/available lists the catalog models the viewer can reach with
their own or shared credentials, plus the models their local servers report.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from chatrelay.api.deps import get_db, get_discovery, get_registry
from chatrelay.auth.middleware import Viewer, get_viewer
from chatrelay.responses import success_response
from chatrelay.schemas.keys import AvailableModelsOut
from chatrelay.services.api_key_resolver import get_available_providers, get_local_endpoints
from chatrelay.services.local_models import LocalModelDiscovery
from chatrelay.services.model_registry import ModelRegistry

router = APIRouter(tags=["models"])


@router.get("/models/available")
async def list_available_models(
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    registry: Annotated[ModelRegistry, Depends(get_registry)],
    discovery: Annotated[LocalModelDiscovery, Depends(get_discovery)],
) -> dict:
    """Models reachable by the viewer.

    An unreachable local server contributes no models rather than failing.

    Returns:
        {"data": {"models": [...], "localModels": [...]}}
    """
    providers = await run_in_threadpool(get_available_providers, db, viewer.user_id)
    endpoints = await run_in_threadpool(get_local_endpoints, db, viewer.user_id)
    local_models = await discovery.list_all(endpoints) if endpoints else []

    out = AvailableModelsOut(
        models=[d.to_dict() for d in registry.for_providers(providers)],
        local_models=[m.to_dict() for m in local_models],
    )
    return success_response(out.model_dump(mode="json", by_alias=True))
