"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
This allows tests to import modules without requiring all environment
variables to be configured upfront.
"""

from fastapi import APIRouter

from chatrelay.api.routes.attachments import router as attachments_router
from chatrelay.api.routes.chats import router as chats_router
from chatrelay.api.routes.files import router as files_router
from chatrelay.api.routes.health import router as health_router
from chatrelay.api.routes.keys import router as keys_router
from chatrelay.api.routes.me import router as me_router
from chatrelay.api.routes.models import router as models_router
from chatrelay.api.routes.share import router as share_router
from chatrelay.api.routes.users import router as users_router

API_PREFIX = "/api"


def create_api_router() -> APIRouter:
    """Create and configure the API router.

    /health sits at the root; everything else lives under /api.
    """
    api = APIRouter(prefix=API_PREFIX)
    api.include_router(chats_router)
    api.include_router(share_router)
    api.include_router(files_router)
    api.include_router(attachments_router)
    api.include_router(models_router)
    api.include_router(keys_router)
    api.include_router(users_router)
    api.include_router(me_router)

    root = APIRouter()
    root.include_router(health_router, tags=["health"])
    root.include_router(api)
    return root


__all__ = ["create_api_router"]
