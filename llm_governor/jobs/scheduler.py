"""
Job Scheduler
=============
APScheduler-based background job that sweeps expired cache entries.
"""

from typing import TYPE_CHECKING

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from llm_governor.core.cache import ResponseCache

logger = structlog.get_logger()


class CacheSweeper:
    """
    Periodically removes expired entries from one response cache.

    The sweeper belongs to the cache that creates it and must be stopped
    when that cache is shut down. It has to be started from inside a
    running event loop.
    """

    def __init__(self, cache: "ResponseCache", interval_seconds: float):
        self.cache = cache
        self.interval_seconds = interval_seconds
        self.scheduler = AsyncIOScheduler()

    async def run_cleanup(self) -> None:
        """Execute one sweep."""
        try:
            removed = self.cache.cleanup()
            if removed:
                logger.debug("Cache sweep completed", removed=removed)
        except Exception as e:
            logger.error("Cache sweep failed", error=str(e))

    def setup(self) -> None:
        """Configure the sweep job."""
        self.scheduler.add_job(
            self.run_cleanup,
            IntervalTrigger(seconds=self.interval_seconds),
            id="cache_cleanup",
            name="Response Cache Sweep",
            replace_existing=True,
        )
        logger.info("Cache sweeper configured", interval_seconds=self.interval_seconds)

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def start(self) -> None:
        """Start the sweeper."""
        if self.running:
            return
        self.setup()
        self.scheduler.start()
        logger.info("Cache sweeper started")

    def stop(self) -> None:
        """Stop the sweeper."""
        if not self.running:
            return
        self.scheduler.shutdown(wait=False)
        logger.info("Cache sweeper stopped")
