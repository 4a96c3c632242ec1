"""
Health Check Endpoints
======================
Liveness probe and a readiness view of the governance components.
"""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from llm_governor import __version__
from llm_governor.api.deps import get_context
from llm_governor.context import GovernorContext

router = APIRouter()


class HealthResponse(BaseModel):
    status: str
    version: str


class ReadinessResponse(BaseModel):
    """Snapshot of the governor's runtime state."""

    status: str
    version: str
    dispatcher_ready: bool
    model: str | None
    fallback_active: bool
    rate_limit_tokens: int
    cache_enabled: bool
    cache_size: int
    cache_sweeper_running: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Liveness probe. Returns OK if the process is serving requests."""
    return HealthResponse(status="ok", version=__version__)


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(
    request: Request,
    context: Annotated[GovernorContext, Depends(get_context)],
) -> ReadinessResponse:
    """
    Readiness probe.

    Reports the active model once a dispatcher exists, along with limiter and
    cache state. Status is ``degraded`` when caching
    is enabled but its sweep job is not running.
    """
    dispatcher = request.app.state.dispatcher
    cache = context.cache
    sweeper_running = cache is not None and cache.cleanup_running

    return ReadinessResponse(
        status="degraded" if cache is not None and not sweeper_running else "ok",
        version=__version__,
        dispatcher_ready=dispatcher is not None,
        model=dispatcher.model if dispatcher is not None else None,
        fallback_active=dispatcher is not None and dispatcher.fallback_active,
        rate_limit_tokens=context.rate_limiter.available_tokens(),
        cache_enabled=cache is not None,
        cache_size=len(cache) if cache is not None else 0,
        cache_sweeper_running=sweeper_running,
    )
