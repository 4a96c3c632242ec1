"""
Prometheus Metrics
==================
Counters and histograms for the governance layer.
"""

from prometheus_client import Counter, Histogram

BACKEND_REQUESTS = Counter(
    "llm_governor_backend_requests_total",
    "Backend calls by backend and outcome",
    ["backend", "outcome"],
)

CACHE_LOOKUPS = Counter(
    "llm_governor_cache_lookups_total",
    "Response cache lookups by result",
    ["result"],
)

CACHE_EVICTIONS = Counter(
    "llm_governor_cache_evictions_total",
    "Response cache entries removed by reason",
    ["reason"],
)

RATE_LIMIT_WAIT_SECONDS = Histogram(
    "llm_governor_rate_limit_wait_seconds",
    "Time callers were suspended waiting for an admission token",
    buckets=(0.05, 0.1, 0.5, 1, 2, 5, 10, 30, 60),
)

TRACKED_COST = Counter(
    "llm_governor_tracked_cost_usd_total",
    "Tracked spend in USD by model",
    ["model"],
)

TRACKED_TOKENS = Counter(
    "llm_governor_tracked_tokens_total",
    "Tracked model tokens by model and direction",
    ["model", "direction"],
)

MODEL_FALLBACKS = Counter(
    "llm_governor_model_fallbacks_total",
    "Automatic switches to the fallback model by error kind",
    ["kind"],
)
