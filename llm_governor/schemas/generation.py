"""
Generation Schemas
==================
Pydantic models for generation requests and responses.
"""

from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field


class Message(BaseModel):
    """A single conversation turn."""

    role: Literal["system", "user", "assistant"]
    content: str


class SamplingParams(BaseModel):
    """Sampling parameters forwarded to the backend."""

    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    top_p: float | None = Field(default=None, gt=0, le=1)
    top_k: int | None = Field(default=None, gt=0)
    presence_penalty: float | None = None
    frequency_penalty: float | None = None

    def merged_with(self, overrides: "SamplingParams") -> "SamplingParams":
        """Return a copy where unset fields are filled from ``overrides``."""
        data = overrides.model_dump(exclude_none=True)
        data.update(self.model_dump(exclude_none=True))
        return SamplingParams(**data)


class GenerationRequest(BaseModel):
    """
    A request for content generation.
    The model may be left empty so the dispatcher applies its active model.
    """

    messages: list[Message] = Field(..., min_length=1)
    model: str | None = None
    sampling: SamplingParams = Field(default_factory=SamplingParams)
    request_id: str = Field(default_factory=lambda: uuid4().hex)
    operation: str = "chat"

    def prompt_text(self) -> str:
        """Render the conversation into the text used for cache keys."""
        return "\n".join(f"{m.role}: {m.content}" for m in self.messages)


class TokenUsage(BaseModel):
    """Token accounting for a single response."""

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


class GenerationResponse(BaseModel):
    """Output of a generation call, or one partial chunk of a stream."""

    text: str = ""
    usage: TokenUsage = Field(default_factory=TokenUsage)
    finish_reason: str | None = None
    model: str | None = None
    cached: bool = False


class EmbeddingRequest(BaseModel):
    """Request for an embedding vector."""

    input: str = Field(..., min_length=1)
    model: str | None = None
