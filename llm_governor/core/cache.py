"""
Response Cache
==============
Bounded LRU cache with TTL expiry for generation responses.
"""

import hashlib
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import structlog

from llm_governor import metrics
from llm_governor.jobs.scheduler import CacheSweeper

logger = structlog.get_logger()

DEFAULT_TEMPERATURE = 0.7


@dataclass
class CacheEntry:
    """A single cached response."""

    key: str
    value: Any
    created_at: float


class ResponseCache:
    """
    LRU cache keyed on (model, temperature, normalized prompt).

    Features:
    - LRU eviction when max size reached
    - TTL expiry, lazily on ``get`` and by a periodic sweep
    - Hit/miss statistics

    Usage:
        cache = ResponseCache(max_size=100, ttl_seconds=3600)
        cache.set(prompt, "gpt-4o", response, temperature=0.2)
        cached = cache.get(prompt, "gpt-4o", temperature=0.2)
    """

    def __init__(
        self,
        max_size: int = 100,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        if max_size <= 0:
            raise ValueError(f"max_size must be > 0, got {max_size}")
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {ttl_seconds}")

        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: OrderedDict[str, CacheEntry] = OrderedDict()
        self._sweeper: CacheSweeper | None = None

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._expirations = 0

    @staticmethod
    def make_key(prompt: str, model: str, temperature: float | None = None) -> str:
        """Deterministic key from trimmed, lower-cased prompt, model and temperature."""
        if temperature is None:
            temperature = DEFAULT_TEMPERATURE
        normalized = prompt.strip().lower()
        data = f"{model}:{temperature}:{normalized}"
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def get(self, prompt: str, model: str, temperature: float | None = None) -> Any | None:
        """
        Get a cached response.

        Returns:
            Cached value or None if not found/expired
        """
        key = self.make_key(prompt, model, temperature)
        entry = self._cache.get(key)

        if entry is None:
            self._misses += 1
            metrics.CACHE_LOOKUPS.labels(result="miss").inc()
            return None

        now = self._clock()
        if self._is_expired(entry, now):
            del self._cache[key]
            self._misses += 1
            self._expirations += 1
            metrics.CACHE_LOOKUPS.labels(result="miss").inc()
            metrics.CACHE_EVICTIONS.labels(reason="expired").inc()
            return None

        self._cache.move_to_end(key)
        self._hits += 1
        metrics.CACHE_LOOKUPS.labels(result="hit").inc()
        logger.debug("Cache hit", model=model, age_seconds=round(now - entry.created_at))
        return entry.value

    def set(
        self,
        prompt: str,
        model: str,
        response: Any,
        temperature: float | None = None,
    ) -> None:
        """Store a response, evicting the least recently used entry when full."""
        key = self.make_key(prompt, model, temperature)

        if key not in self._cache and len(self._cache) >= self.max_size:
            self._evict_lru()

        self._cache[key] = CacheEntry(key=key, value=response, created_at=self._clock())
        self._cache.move_to_end(key)
        logger.debug("Cached response", model=model, size=len(self._cache))

    def _evict_lru(self) -> None:
        if self._cache:
            self._cache.popitem(last=False)
            self._evictions += 1
            metrics.CACHE_EVICTIONS.labels(reason="lru").inc()

    def cleanup(self) -> int:
        """
        Remove every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._cache.items() if self._is_expired(entry, now)]
        for key in expired:
            del self._cache[key]

        if expired:
            self._expirations += len(expired)
            metrics.CACHE_EVICTIONS.labels(reason="expired").inc(len(expired))
            logger.info("Cleaned up expired cache entries", removed=len(expired))
        return len(expired)

    def clear(self) -> None:
        self._cache.clear()
        logger.info("Cleared response cache")

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> dict[str, Any]:
        now = self._clock()
        oldest_age = max((now - e.created_at for e in self._cache.values()), default=0.0)
        total = self._hits + self._misses
        return {
            "size": len(self._cache),
            "max_size": self.max_size,
            "oldest_age_seconds": oldest_age,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / total if total else 0.0,
            "evictions": self._evictions,
            "expirations": self._expirations,
        }

    def start_cleanup(self, interval_seconds: float = 300.0) -> None:
        """Start the periodic sweep. Must be called from a running event loop."""
        if self._sweeper is None:
            self._sweeper = CacheSweeper(self, interval_seconds)
        self._sweeper.start()

    def stop_cleanup(self) -> None:
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None

    @property
    def cleanup_running(self) -> bool:
        return self._sweeper is not None and self._sweeper.running
