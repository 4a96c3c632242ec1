"""
Provider Schemas
================
Backend descriptors and model summaries.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class ProtocolFamily(str, Enum):
    """Closed set of backend protocol families."""

    DIRECT_COMPLETION = "direct-completion"
    OAUTH_TOKEN = "oauth-token"
    LOCAL_DAEMON = "local-daemon"


class ModelSummary(BaseModel):
    """Uniform model listing entry across backends."""

    id: str
    name: str
    provider: str
    context_length: int | None = None
    size: str | None = None
    is_free: bool | None = None


class BackendDescriptor(BaseModel):
    """Connection descriptor for one backend."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, max_length=64, pattern=r"^[a-z0-9][a-z0-9._-]*$")
    name: str
    protocol: ProtocolFamily
    base_url: str
    credential_env: str | None = None
    is_local: bool = False
    supports_streaming: bool = True
    models: tuple[ModelSummary, ...] = ()
    headers: dict[str, str] = Field(default_factory=dict)
    is_builtin: bool = False


class ParsedModel(BaseModel):
    """A model identifier split into provider and provider-local model."""

    provider: str
    model: str

    @property
    def full_id(self) -> str:
        return f"{self.provider}/{self.model}"
