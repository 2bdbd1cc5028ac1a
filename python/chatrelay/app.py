"""FastAPI application creation and configuration.

This module creates and configures the FastAPI application instance.
It registers exception handlers, auth middleware, request-id middleware, and routes.

Middleware Ordering (Critical):
- Middleware runs in reverse order of registration
- RequestIDMiddleware is added LAST so it runs FIRST (outermost)
- This ensures all requests (including auth failures) get X-Request-ID

Actual execution order per request:
1. RequestIDMiddleware (sets request_id, starts timer)
2. AuthMiddleware (verifies bearer token, bootstraps the user, sets viewer)
3. Route handler
4. AuthMiddleware (returns response)
5. RequestIDMiddleware (logs, sets response header)

Process-wide collaborators (built in the lifespan, kept on app.state):
- Database tables, created from the ORM metadata when missing
- httpx.AsyncClient shared by every provider adapter and local discovery
- LLMRouter, ModelRegistry, LocalModelDiscovery, Dispatcher
- Storage client and BackgroundRunner

Nothing here is a module-level singleton; tests may pre-seed app.state
(e.g. a FakeStorageClient) before startup.
"""

import json
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatrelay.api.routes import create_api_router
from chatrelay.auth.middleware import AuthMiddleware
from chatrelay.auth.verifier import JwtSecretVerifier, TokenVerifier
from chatrelay.background import BackgroundRunner
from chatrelay.config import get_settings
from chatrelay.db.engine import create_schema
from chatrelay.db.session import get_session_factory
from chatrelay.errors import ApiError, ApiErrorCode
from chatrelay.logging import configure_logging, get_logger
from chatrelay.middleware.request_id import RequestIDMiddleware
from chatrelay.responses import (
    api_error_handler,
    error_response,
    http_exception_handler,
    unhandled_exception_handler,
)
from chatrelay.services.bootstrap import create_bootstrap_callback
from chatrelay.services.dispatcher import Dispatcher
from chatrelay.services.llm import LLMRouter
from chatrelay.services.local_models import LocalModelDiscovery
from chatrelay.services.model_registry import ModelRegistry
from chatrelay.storage.client import StorageClientBase, get_storage_client

# Configure structured logging at import time
configure_logging()

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build shared collaborators at startup and release them at shutdown."""
    settings = get_settings()

    create_schema(get_session_factory().kw["bind"])

    app.state.httpx_client = httpx.AsyncClient(
        timeout=httpx.Timeout(float(settings.llm_timeout_s), connect=10.0),
        limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
    )
    app.state.llm_router = LLMRouter(
        app.state.httpx_client,
        openrouter_app_url=settings.openrouter_app_url,
        openrouter_app_name=settings.openrouter_app_name,
    )
    app.state.model_registry = ModelRegistry()
    app.state.local_discovery = LocalModelDiscovery(
        app.state.httpx_client, timeout_s=settings.local_discovery_timeout_s
    )
    app.state.dispatcher = Dispatcher(
        app.state.llm_router,
        app.state.model_registry,
        app.state.local_discovery,
        max_tokens=settings.llm_max_output_tokens,
        thinking_budget=settings.thinking_budget_tokens,
        timeout_s=settings.llm_timeout_s,
    )
    if getattr(app.state, "storage", None) is None:
        app.state.storage = get_storage_client()
    app.state.background_runner = BackgroundRunner(max_workers=settings.background_workers)

    logger.info(
        "app_started",
        providers=app.state.llm_router.providers,
        model_count=len(app.state.model_registry),
    )

    yield

    await app.state.background_runner.shutdown()
    await app.state.httpx_client.aclose()
    logger.info("httpx_client_closed")


def create_app(
    skip_auth_middleware: bool = False,
    token_verifier: TokenVerifier | None = None,
    storage: StorageClientBase | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        skip_auth_middleware: If True, skip adding auth middleware (for testing).
        token_verifier: Optional custom token verifier (for testing).
        storage: Optional storage client; defaults to LocalFileStorage(UPLOAD_DIR).

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="chatrelay API",
        description="Multi-provider chat backend",
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.storage = storage

    # Register exception handlers
    app.add_exception_handler(ApiError, api_error_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Handle request validation errors (including malformed JSON)."""
        return JSONResponse(
            status_code=400,
            content=error_response(ApiErrorCode.E_INVALID_REQUEST, "Invalid request body"),
        )

    @app.middleware("http")
    async def catch_json_decode_errors(request: Request, call_next):
        """Catch JSON decode errors before they reach route handlers."""
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            content_type = request.headers.get("content-type", "")
            if "application/json" in content_type:
                body = await request.body()
                if body:
                    try:
                        json.loads(body)
                    except json.JSONDecodeError:
                        return JSONResponse(
                            status_code=400,
                            content=error_response(
                                ApiErrorCode.E_INVALID_REQUEST, "Malformed JSON body"
                            ),
                        )
        return await call_next(request)

    app.include_router(create_api_router())

    if not skip_auth_middleware:
        verifier = token_verifier or JwtSecretVerifier.from_settings(settings)
        app.add_middleware(
            AuthMiddleware,
            verifier=verifier,
            bootstrap_callback=create_bootstrap_callback(),
        )
        logger.info("auth_middleware_enabled", env=settings.chatrelay_env.value)

    return app


def add_request_id_middleware(app: FastAPI, log_requests: bool = True) -> None:
    """Add request-id middleware to the app.

    This should be called AFTER all other middleware is added, so it runs FIRST.
    This ensures every response includes X-Request-ID, including auth failures.
    """
    app.add_middleware(RequestIDMiddleware, log_requests=log_requests)
    logger.info("request_id_middleware_enabled")
