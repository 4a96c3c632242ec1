"""
Usage Schemas
=============
Pydantic models for usage tracking and budgets.
"""

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

BudgetWindow = Literal["session", "hourly", "daily"]


class UsageRecord(BaseModel):
    """
    One tracked backend call.
    Immutable once created.
    """

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    model: str
    prompt_tokens: int = Field(..., ge=0)
    completion_tokens: int = Field(..., ge=0)
    total_tokens: int = Field(..., ge=0)
    cost: Decimal
    operation: str = "chat"


class SessionStats(BaseModel):
    """Running totals for the current session."""

    session_start: datetime
    total_cost: Decimal = Decimal("0")
    total_tokens: int = 0
    request_count: int = 0
    records: list[UsageRecord] = Field(default_factory=list)


class Budget(BaseModel):
    """Spend ceilings in USD. Unset limits are not enforced."""

    model_config = ConfigDict(frozen=True)

    session_limit: Decimal | None = Decimal("2.0")
    hourly_limit: Decimal | None = Decimal("10.0")
    daily_limit: Decimal | None = Decimal("50.0")
    warning_threshold: float = Field(default=0.75, gt=0, le=1)

    @field_validator("session_limit", "hourly_limit", "daily_limit", mode="before")
    @classmethod
    def coerce_limit(cls, v: object) -> object:
        if isinstance(v, float):
            return Decimal(str(v))
        return v


class BudgetCheck(BaseModel):
    """Result of a pre-flight budget check."""

    would_exceed: bool
    reason: BudgetWindow | None = None
    current_cost: Decimal
    limit: Decimal
    overage: Decimal = Decimal("0")


class ModelCostSummary(BaseModel):
    """Per-model rollup of a session."""

    model: str
    cost: Decimal
    tokens: int
    requests: int
