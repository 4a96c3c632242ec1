"""
Governor Context
================
Owns the shared governance components for one process or session.
"""

from collections.abc import Mapping

import httpx
import structlog

from llm_governor.config import Settings, get_settings
from llm_governor.core.cache import ResponseCache
from llm_governor.core.pricing import PricingTable
from llm_governor.core.rate_limiter import RateLimiter
from llm_governor.schemas.usage import Budget
from llm_governor.services.cost_tracker import CostTracker
from llm_governor.services.registry import BackendRegistry

logger = structlog.get_logger()


class GovernorContext:
    """
    Shared components passed explicitly to dispatchers and the API.

    ``cache`` is None when response caching is disabled.
    """

    def __init__(
        self,
        settings: Settings,
        pricing: PricingTable,
        rate_limiter: RateLimiter,
        cache: ResponseCache | None,
        cost_tracker: CostTracker,
        registry: BackendRegistry,
    ):
        self.settings = settings
        self.pricing = pricing
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.cost_tracker = cost_tracker
        self.registry = registry
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        environ: Mapping[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> "GovernorContext":
        """Build every component from settings."""
        settings = settings or get_settings()

        pricing = PricingTable(config_path=settings.pricing_config_path)
        rate_limiter = RateLimiter(
            requests_per_minute=settings.rate_limit_requests_per_minute,
            burst_size=settings.rate_limit_burst,
        )
        cache = None
        if settings.cache_enabled:
            cache = ResponseCache(
                max_size=settings.cache_max_size,
                ttl_seconds=settings.cache_ttl_seconds,
            )
        budget = Budget(
            session_limit=settings.budget_session_limit,
            hourly_limit=settings.budget_hourly_limit,
            daily_limit=settings.budget_daily_limit,
            warning_threshold=settings.budget_warning_threshold,
        )
        cost_tracker = CostTracker(pricing, budget=budget, log_path=settings.usage_log_path)
        registry = BackendRegistry(
            settings.custom_providers_dir,
            environ=environ,
            http_client=http_client,
            ollama_base_url=settings.ollama_base_url,
        )

        return cls(
            settings=settings,
            pricing=pricing,
            rate_limiter=rate_limiter,
            cache=cache,
            cost_tracker=cost_tracker,
            registry=registry,
        )

    async def start(self) -> None:
        """Start background jobs. Call from inside the running event loop."""
        if self._started:
            return
        if self.cache is not None:
            self.cache.start_cleanup(self.settings.cache_cleanup_interval_seconds)
        self._started = True
        logger.info("Governor context started", cache_enabled=self.cache is not None)

    async def aclose(self) -> None:
        """Stop background jobs, drain pending log writes, close clients."""
        if self.cache is not None:
            self.cache.stop_cleanup()
        await self.cost_tracker.flush()
        await self.registry.aclose()
        self._started = False
        logger.info("Governor context closed")

    async def __aenter__(self) -> "GovernorContext":
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()
