"""
Pydantic Schemas
================
Data model shared by the governance components and the companion API.
"""

from llm_governor.schemas.generation import (
    EmbeddingRequest,
    GenerationRequest,
    GenerationResponse,
    Message,
    SamplingParams,
    TokenUsage,
)
from llm_governor.schemas.providers import (
    BackendDescriptor,
    ModelSummary,
    ParsedModel,
    ProtocolFamily,
)
from llm_governor.schemas.usage import (
    Budget,
    BudgetCheck,
    ModelCostSummary,
    SessionStats,
    UsageRecord,
)

__all__ = [
    "BackendDescriptor",
    "Budget",
    "BudgetCheck",
    "EmbeddingRequest",
    "GenerationRequest",
    "GenerationResponse",
    "Message",
    "ModelCostSummary",
    "ModelSummary",
    "ParsedModel",
    "ProtocolFamily",
    "SamplingParams",
    "SessionStats",
    "TokenUsage",
    "UsageRecord",
]
