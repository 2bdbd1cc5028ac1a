"""Health check endpoint."""

from fastapi import APIRouter, Request

from chatrelay.responses import success_response

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness check.

    Returns 200 while the process runs, with the providers the router can
    dispatch to. Does not check the database or any provider.
    """
    return success_response(
        {"status": "ok", "providers": list(request.app.state.llm_router.providers)}
    )
