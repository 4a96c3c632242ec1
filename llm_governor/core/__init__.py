"""
Core Governance Logic
=====================
Pricing, admission control, response caching and error classification.
"""

from llm_governor.core.cache import ResponseCache
from llm_governor.core.classifier import ClassifiedError, classify_error
from llm_governor.core.pricing import ModelPricing, PricingTable, format_cost
from llm_governor.core.rate_limiter import RateLimiter, RateLimiterState

__all__ = [
    "ClassifiedError",
    "ModelPricing",
    "PricingTable",
    "RateLimiter",
    "RateLimiterState",
    "ResponseCache",
    "classify_error",
    "format_cost",
]
