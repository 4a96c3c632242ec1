"""
Generation Endpoints
====================
Governed content generation.
"""

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, Query

from llm_governor.api.deps import get_context, get_dispatcher
from llm_governor.context import GovernorContext
from llm_governor.schemas.generation import GenerationRequest, GenerationResponse
from llm_governor.services.dispatcher import Dispatcher

router = APIRouter()
logger = structlog.get_logger()


@router.post(
    "/generate",
    response_model=GenerationResponse,
    summary="Generate content",
    description="Run a request through cache, rate limiter, backend and cost tracker",
)
async def generate(
    request: GenerationRequest,
    context: Annotated[GovernorContext, Depends(get_context)],
    dispatcher: Annotated[Dispatcher, Depends(get_dispatcher)],
    enforce_budget: Annotated[bool, Query()] = False,
) -> GenerationResponse:
    """
    Generate a response.

    With ``enforce_budget`` the estimated cost is checked first and the
    call is refused with 402 if it would exceed a budget.
    """
    if enforce_budget:
        estimate = context.pricing.estimate_prompt_cost(
            dispatcher.priced_model(dispatcher.active_model(request)),
            request.prompt_text(),
            expected_completion_tokens=request.sampling.max_tokens or 1000,
        )
        context.cost_tracker.ensure_within_budget(estimate)

    response = await dispatcher.generate_content(request)
    logger.info(
        "Generated response",
        request_id=request.request_id,
        model=response.model,
        cached=response.cached,
    )
    return response
