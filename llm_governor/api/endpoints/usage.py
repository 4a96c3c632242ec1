"""
Usage Endpoints
===============
Session spend, budget checks and cost recommendations.
"""

from datetime import datetime
from decimal import Decimal
from typing import Annotated

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from llm_governor.api.deps import get_context
from llm_governor.context import GovernorContext
from llm_governor.schemas.usage import BudgetCheck, ModelCostSummary

router = APIRouter()

Context = Annotated[GovernorContext, Depends(get_context)]


class SessionSummaryResponse(BaseModel):
    """Session totals with a per-model breakdown."""

    session_start: datetime
    total_cost: Decimal
    total_tokens: int
    request_count: int
    by_model: list[ModelCostSummary]
    summary: str


class RecommendationsResponse(BaseModel):
    """Suggestions for reducing spend."""

    recommendations: list[str]


@router.get(
    "/session",
    response_model=SessionSummaryResponse,
    summary="Get session usage",
    description="Totals and per-model costs for the current session",
)
async def get_session_usage(context: Context) -> SessionSummaryResponse:
    tracker = context.cost_tracker
    stats = tracker.session_stats()
    return SessionSummaryResponse(
        session_start=stats.session_start,
        total_cost=stats.total_cost,
        total_tokens=stats.total_tokens,
        request_count=stats.request_count,
        by_model=tracker.costs_by_model(),
        summary=tracker.format_summary(),
    )


@router.get(
    "/budget",
    response_model=BudgetCheck,
    summary="Check budget",
    description="Whether a call of the given estimated cost would exceed a budget",
)
async def check_budget(
    context: Context,
    estimated_cost: Annotated[Decimal, Query(ge=0)] = Decimal("0"),
) -> BudgetCheck:
    return context.cost_tracker.would_exceed_budget(estimated_cost)


@router.get(
    "/recommendations",
    response_model=RecommendationsResponse,
    summary="Get cost recommendations",
)
async def get_recommendations(context: Context) -> RecommendationsResponse:
    return RecommendationsResponse(recommendations=context.cost_tracker.recommendations())
