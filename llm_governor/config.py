"""
Application Configuration
=========================
Centralized configuration management using Pydantic Settings.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuthMode(str, Enum):
    """How the user authenticated against a model backend."""

    OAUTH = "oauth"
    LOGIN_WITH_GOOGLE = "oauth-personal"
    API_KEY = "openai"
    GEMINI_API_KEY = "gemini-api-key"
    VERTEX_AI = "vertex-ai"
    OLLAMA = "ollama"

    @property
    def is_oauth(self) -> bool:
        return self in (AuthMode.OAUTH, AuthMode.LOGIN_WITH_GOOGLE)


class UserTier(str, Enum):
    """Subscription tier reported by OAuth-backed services."""

    FREE = "free"
    LEGACY = "legacy"
    STANDARD = "standard"

    @property
    def is_paid(self) -> bool:
        return self in (UserTier.LEGACY, UserTier.STANDARD)


DEFAULT_MODEL = "openrouter/anthropic/claude-sonnet-4"
DEFAULT_FALLBACK_MODEL = "google/gemini-2.0-flash-exp:free"


class Settings(BaseSettings):
    """Governor settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Authentication
    auth_mode: AuthMode | None = None
    user_tier: UserTier | None = None
    api_key: str | None = None
    oauth_refresh_url: str = "https://openrouter.ai/api/v1/auth/refresh"

    # Backend selection
    provider: str | None = None
    target_model: str = DEFAULT_MODEL
    fallback_model: str = DEFAULT_FALLBACK_MODEL
    base_url: str | None = None
    ollama_base_url: str = "http://localhost:11434"

    # Transport
    request_timeout: float = Field(default=120.0, gt=0)
    max_retries: int = Field(default=3, ge=0)
    proxy: str | None = None

    # Sampling overrides
    temperature: float | None = Field(default=None, ge=0, le=2)
    max_tokens: int | None = Field(default=None, gt=0)
    top_p: float | None = Field(default=None, gt=0, le=1)

    # Rate limiting
    rate_limit_requests_per_minute: int = Field(default=10, gt=0)
    rate_limit_burst: int | None = Field(default=None, gt=0)

    # Response cache
    cache_enabled: bool = True
    cache_max_size: int = Field(default=100, gt=0)
    cache_ttl_seconds: float = Field(default=3600.0, gt=0)
    cache_cleanup_interval_seconds: float = Field(default=300.0, gt=0)

    # Budgets (USD)
    budget_session_limit: float | None = 2.0
    budget_hourly_limit: float | None = 10.0
    budget_daily_limit: float | None = 50.0
    budget_warning_threshold: float = Field(default=0.75, gt=0, le=1)

    # Storage
    data_dir: Path = Field(default_factory=lambda: Path.home() / ".llm-governor")
    pricing_config_path: str | None = None

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "console"] = "console"

    # Companion API
    metrics_enabled: bool = True
    app_host: str = "127.0.0.1"
    app_port: int = 8765

    @property
    def usage_log_path(self) -> Path:
        return self.data_dir / "logs" / "cost-tracking.log"

    @property
    def custom_providers_dir(self) -> Path:
        return self.data_dir / "custom_providers"

    @property
    def oauth_credentials_path(self) -> Path:
        return self.data_dir / "oauth_creds.json"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
