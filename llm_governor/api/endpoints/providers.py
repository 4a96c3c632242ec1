"""
Provider Endpoints
==================
Backend descriptors, availability and model listings.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from llm_governor.api.deps import get_context
from llm_governor.context import GovernorContext
from llm_governor.schemas.providers import BackendDescriptor, ModelSummary

router = APIRouter()
logger = structlog.get_logger()

Context = Annotated[GovernorContext, Depends(get_context)]


class AvailabilityResponse(BaseModel):
    """Whether a backend can be used right now."""

    id: str
    available: bool


def _require(context: GovernorContext, provider_id: str) -> BackendDescriptor:
    descriptor = context.registry.get_provider(provider_id)
    if descriptor is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown provider '{provider_id}'",
        )
    return descriptor


@router.get(
    "",
    response_model=list[BackendDescriptor],
    summary="List providers",
    description="List built-in and custom backends",
)
async def list_providers(context: Context) -> list[BackendDescriptor]:
    return context.registry.all_providers()


@router.get(
    "/{provider_id}",
    response_model=BackendDescriptor,
    summary="Get provider",
    description="Get one backend by id or alias",
)
async def get_provider(provider_id: str, context: Context) -> BackendDescriptor:
    return _require(context, provider_id)


@router.get(
    "/{provider_id}/models",
    response_model=list[ModelSummary],
    summary="List provider models",
    description="Static model list, or the live listing from the backend",
)
async def get_provider_models(provider_id: str, context: Context) -> list[ModelSummary]:
    descriptor = _require(context, provider_id)
    return await context.registry.get_models(descriptor.id)


@router.get(
    "/{provider_id}/available",
    response_model=AvailabilityResponse,
    summary="Check provider availability",
    description="Probe local backends; check credentials for remote ones",
)
async def check_provider(provider_id: str, context: Context) -> AvailabilityResponse:
    descriptor = _require(context, provider_id)
    available = await context.registry.is_available(descriptor.id)
    logger.debug("Checked provider availability", id=descriptor.id, available=available)
    return AvailabilityResponse(id=descriptor.id, available=available)
