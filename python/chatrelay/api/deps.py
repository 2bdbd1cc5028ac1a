"""FastAPI dependencies for route handlers.

Process-wide collaborators are built once in the app lifespan and kept on
app.state; these accessors hand them to routes.
"""

import httpx
from fastapi import Request

from chatrelay.background import BackgroundRunner
from chatrelay.db.session import get_db, get_session_factory
from chatrelay.services.dispatcher import Dispatcher
from chatrelay.services.llm import LLMRouter
from chatrelay.services.local_models import LocalModelDiscovery
from chatrelay.services.model_registry import ModelRegistry
from chatrelay.storage.client import StorageClientBase

__all__ = [
    "get_db",
    "get_session_factory",
    "get_http_client",
    "get_llm_router",
    "get_registry",
    "get_discovery",
    "get_dispatcher",
    "get_storage",
    "get_runner",
]


def get_http_client(request: Request) -> httpx.AsyncClient:
    return request.app.state.httpx_client


def get_llm_router(request: Request) -> LLMRouter:
    """Get the shared LLM router from app state.

    The router wraps the shared httpx.AsyncClient created at startup.
    """
    return request.app.state.llm_router


def get_registry(request: Request) -> ModelRegistry:
    return request.app.state.model_registry


def get_discovery(request: Request) -> LocalModelDiscovery:
    return request.app.state.local_discovery


def get_dispatcher(request: Request) -> Dispatcher:
    return request.app.state.dispatcher


def get_storage(request: Request) -> StorageClientBase:
    return request.app.state.storage


def get_runner(request: Request) -> BackgroundRunner:
    return request.app.state.background_runner
