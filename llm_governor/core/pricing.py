"""
Token Cost Engine
=================
Per-model pricing lookups and cost arithmetic. Prices are USD per million tokens.
"""

import math
import re
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Literal

import structlog
import yaml

logger = structlog.get_logger()

ONE_MILLION = Decimal("1000000")

CostTier = Literal["free", "cheap", "moderate", "expensive", "very-expensive"]

_DATE_SUFFIX = re.compile(r"-\d{8}$")


@dataclass(frozen=True)
class ModelPricing:
    """Pricing for a single model."""

    prompt_price: Decimal
    completion_price: Decimal
    context_window: int

    @classmethod
    def of(cls, prompt: str, completion: str, context_window: int) -> "ModelPricing":
        return cls(Decimal(prompt), Decimal(completion), context_window)


# Paid variants are listed before their free counterparts so that loose
# substring matches resolve to the paid price.
DEFAULT_PRICING: dict[str, ModelPricing] = {
    # Anthropic
    "anthropic/claude-3-opus": ModelPricing.of("15.0", "75.0", 200_000),
    "anthropic/claude-3.5-sonnet": ModelPricing.of("3.0", "15.0", 200_000),
    "anthropic/claude-sonnet-4": ModelPricing.of("3.0", "15.0", 200_000),
    "anthropic/claude-sonnet-4.5": ModelPricing.of("3.0", "15.0", 200_000),
    "anthropic/claude-3.5-haiku": ModelPricing.of("0.8", "4.0", 200_000),
    # OpenAI
    "openai/gpt-4-turbo": ModelPricing.of("10.0", "30.0", 128_000),
    "openai/gpt-4o": ModelPricing.of("2.5", "10.0", 128_000),
    "openai/o1-preview": ModelPricing.of("15.0", "60.0", 128_000),
    "openai/o1-mini": ModelPricing.of("3.0", "12.0", 128_000),
    # Affordable paid models
    "google/gemini-2.0-flash-exp": ModelPricing.of("0.075", "0.3", 1_000_000),
    "deepseek/deepseek-chat-v3": ModelPricing.of("0.27", "1.1", 164_000),
    "qwen/qwen3-coder": ModelPricing.of("0.14", "0.14", 262_000),
    # Free tier
    "google/gemini-2.0-flash-exp:free": ModelPricing.of("0", "0", 1_000_000),
    "qwen/qwen3-coder:free": ModelPricing.of("0", "0", 262_000),
    "deepseek/deepseek-chat-v3-0324:free": ModelPricing.of("0", "0", 164_000),
    "meta-llama/llama-3.3-70b-instruct:free": ModelPricing.of("0", "0", 66_000),
    # Prefix entries: anything served by a local backend costs nothing
    "ollama/": ModelPricing.of("0", "0", 8_192),
    "lmstudio/": ModelPricing.of("0", "0", 8_192),
    "llamacpp/": ModelPricing.of("0", "0", 8_192),
}

# Unknown models are billed at the most expensive known tier.
FALLBACK_PRICING = ModelPricing.of("15.0", "75.0", 200_000)


class PricingTable:
    """
    Model pricing table.

    Starts from the built-in table and optionally overlays entries from a YAML
    file of the form::

        models:
          vendor/model-name:
            prompt_per_million: 1.0
            completion_per_million: 2.0
            context_window: 128000
    """

    def __init__(
        self,
        prices: dict[str, ModelPricing] | None = None,
        config_path: str | None = None,
    ):
        self._base = dict(DEFAULT_PRICING if prices is None else prices)
        self.config_path = config_path
        self._prices: dict[str, ModelPricing] = {}
        self._load_pricing()

    def _load_pricing(self) -> None:
        """Merge the YAML overlay, if any, over the base table."""
        self._prices = dict(self._base)
        if not self.config_path:
            return

        config_file = Path(self.config_path)
        if not config_file.exists():
            logger.warning("Pricing config not found, using defaults", path=self.config_path)
            return

        try:
            with open(config_file) as f:
                data = yaml.safe_load(f) or {}
            overlay = self._parse_overlay(data)
        except (OSError, yaml.YAMLError, ValueError) as e:
            logger.error("Failed to load pricing config", path=self.config_path, error=str(e))
            return

        self._prices.update(overlay)
        logger.info("Loaded pricing configuration", path=self.config_path, models=len(overlay))

    @staticmethod
    def _parse_overlay(data: dict[str, Any]) -> dict[str, ModelPricing]:
        models = data.get("models", {})
        if not isinstance(models, dict):
            raise ValueError("'models' must be a mapping")

        overlay = {}
        for model_id, entry in models.items():
            if not isinstance(entry, dict):
                raise ValueError(f"Pricing for '{model_id}' must be a mapping")
            overlay[model_id] = ModelPricing(
                prompt_price=Decimal(str(entry.get("prompt_per_million", 0))),
                completion_price=Decimal(str(entry.get("completion_per_million", 0))),
                context_window=int(entry.get("context_window", 0)),
            )
        return overlay

    @property
    def fallback(self) -> ModelPricing:
        """Pricing applied to unknown models."""
        return FALLBACK_PRICING

    def reload(self) -> None:
        """Reload the YAML overlay from disk."""
        self._load_pricing()

    def price(self, model_id: str) -> ModelPricing | None:
        """
        Look up pricing for a model.

        Lookup order: exact id, prefix entries (keys ending in ``/``), id
        without a trailing ``-YYYYMMDD`` snapshot suffix, then a substring
        match against the remaining keys in either direction.

        Returns:
            ModelPricing, or None if the model is unknown
        """
        if model_id in self._prices:
            return self._prices[model_id]

        for key, pricing in self._prices.items():
            if key.endswith("/") and model_id.startswith(key):
                return pricing

        base_id = _DATE_SUFFIX.sub("", model_id)
        if base_id in self._prices:
            return self._prices[base_id]

        for candidate in dict.fromkeys((model_id, base_id)):
            for key, pricing in self._prices.items():
                if key.endswith("/"):
                    continue
                if key in candidate or candidate in key:
                    return pricing

        return None

    def cost(self, model_id: str, prompt_tokens: int, completion_tokens: int) -> Decimal:
        """
        Calculate the USD cost of a call.

        Unknown models are priced with FALLBACK_PRICING rather than as free.
        """
        pricing = self.price(model_id)
        if pricing is None:
            logger.warning("Unknown model pricing, using conservative estimate", model=model_id)
            pricing = self.fallback

        prompt_cost = Decimal(prompt_tokens) * pricing.prompt_price / ONE_MILLION
        completion_cost = Decimal(completion_tokens) * pricing.completion_price / ONE_MILLION
        return prompt_cost + completion_cost

    def is_expensive(self, model_id: str) -> bool:
        """A model is expensive at >= $1 per million prompt tokens."""
        pricing = self.price(model_id)
        if pricing is None:
            return True
        return pricing.prompt_price >= 1

    def is_free(self, model_id: str) -> bool:
        pricing = self.price(model_id)
        if pricing is None:
            return False
        return pricing.prompt_price == 0 and pricing.completion_price == 0

    def cost_tier(self, model_id: str) -> CostTier:
        pricing = self.price(model_id)
        if pricing is None:
            return "expensive"
        if pricing.prompt_price == 0:
            return "free"
        if pricing.prompt_price < Decimal("0.5"):
            return "cheap"
        if pricing.prompt_price < 2:
            return "moderate"
        if pricing.prompt_price < 10:
            return "expensive"
        return "very-expensive"

    def estimate_prompt_cost(
        self,
        model_id: str,
        prompt_text: str,
        expected_completion_tokens: int = 1000,
    ) -> Decimal:
        """Estimate cost before sending, at roughly 0.75 words per token."""
        words = len(prompt_text.split())
        estimated_prompt_tokens = math.ceil(words / 0.75)
        return self.cost(model_id, estimated_prompt_tokens, expected_completion_tokens)

    def models(self) -> list[dict[str, Any]]:
        """List all known models and their prices."""
        return [
            {
                "model": model_id,
                "prompt_price_per_million": pricing.prompt_price,
                "completion_price_per_million": pricing.completion_price,
                "context_window": pricing.context_window,
            }
            for model_id, pricing in sorted(self._prices.items())
        ]


def format_cost(cost: Decimal | float) -> str:
    """Format a USD amount for display."""
    cost = Decimal(str(cost))
    if cost == 0:
        return "Free"
    if cost < Decimal("0.001"):
        return "< $0.001"
    if cost < Decimal("0.01"):
        return f"${cost:.4f}"
    if cost < 1:
        return f"${cost:.3f}"
    return f"${cost:.2f}"
