"""
Pricing Endpoints
=================
Model price lookups.
"""

from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel

from llm_governor.api.deps import get_context
from llm_governor.context import GovernorContext

router = APIRouter()


class ModelPricingResponse(BaseModel):
    """Pricing for one model, USD per million tokens."""

    model: str
    known: bool
    prompt_price_per_million: Decimal
    completion_price_per_million: Decimal
    context_window: int
    cost_tier: str
    is_free: bool
    is_expensive: bool


@router.get(
    "/{model:path}",
    response_model=ModelPricingResponse,
    summary="Get model pricing",
    description="Resolve pricing for a model id; unknown models report the fallback tier",
)
async def get_model_pricing(
    model: str,
    context: Annotated[GovernorContext, Depends(get_context)],
) -> ModelPricingResponse:
    if not model:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Model id is required")

    table = context.pricing
    pricing = table.price(model)
    effective = pricing or table.fallback
    return ModelPricingResponse(
        model=model,
        known=pricing is not None,
        prompt_price_per_million=effective.prompt_price,
        completion_price_per_million=effective.completion_price,
        context_window=effective.context_window,
        cost_tier=table.cost_tier(model),
        is_free=table.is_free(model),
        is_expensive=table.is_expensive(model),
    )
