"""
Pricing calculations and rate management.

Handles cost computations per (provider, model) from a price table that can be
swapped at runtime without disturbing calls already in flight.
"""

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict, Optional, Tuple

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

# Prices are quoted per single token/byte, so round to micro-dollars
COST_QUANTUM = Decimal("0.000001")

PriceKey = Tuple[str, str]


@dataclass(frozen=True)
class ModelPricing:
    """Per-unit pricing for a specific provider model."""
    prompt_cost_per_token: Decimal
    completion_cost_per_token: Decimal
    cost_per_byte: Decimal = Decimal("0")

    def __post_init__(self):
        """Validate prices are non-negative."""
        if self.prompt_cost_per_token < 0:
            raise ValueError("prompt_cost_per_token cannot be negative")
        if self.completion_cost_per_token < 0:
            raise ValueError("completion_cost_per_token cannot be negative")
        if self.cost_per_byte < 0:
            raise ValueError("cost_per_byte cannot be negative")

    @classmethod
    def flat(cls, cost_per_token: str) -> "ModelPricing":
        """Same price for prompt and completion tokens."""
        price = Decimal(cost_per_token)
        return cls(prompt_cost_per_token=price, completion_cost_per_token=price)


@dataclass(frozen=True)
class PricingTable:
    """Immutable pricing table keyed by (provider, model)."""
    prices: Dict[PriceKey, ModelPricing]

    def get_pricing(self, provider_id: str, model_id: str) -> ModelPricing:
        """Get pricing for a specific provider model.

        Args:
            provider_id: Provider identifier
            model_id: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If the model has no price
        """
        key = (provider_id, model_id)
        if key not in self.prices:
            raise ValueError(f"Unsupported model: {provider_id}/{model_id}")
        return self.prices[key]

    def __contains__(self, key: PriceKey) -> bool:
        return key in self.prices


def calculate_cost(pricing: ModelPricing, usage: TokenUsage) -> Decimal:
    """Calculate total cost for usage with conservative rounding.

    Args:
        pricing: Unit prices for the model that served the call
        usage: Token and byte usage

    Returns:
        Total cost rounded UP to micro-dollars
    """
    prompt_cost = Decimal(usage.prompt_tokens) * pricing.prompt_cost_per_token
    completion_cost = Decimal(usage.completion_tokens) * pricing.completion_cost_per_token
    byte_cost = Decimal(usage.total_bytes) * pricing.cost_per_byte

    total_cost = prompt_cost + completion_cost + byte_cost
    return total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP)


def estimate_cost(pricing: ModelPricing, prompt_tokens: int, completion_tokens: int,
                  request_bytes: int = 0) -> Decimal:
    """Pre-dispatch estimate, using the same rounding as actual costs."""
    usage = TokenUsage(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        request_bytes=request_bytes,
    )
    return calculate_cost(pricing, usage)


class PricingRegistry:
    """Process-wide holder of the current pricing table.

    Readers take a reference to the current immutable table, so a reload
    swaps tables atomically and in-flight calls keep the prices they read.
    """

    def __init__(self, table: Optional[PricingTable] = None):
        self._table = table or PricingTable({})
        self._lock = threading.Lock()

    @property
    def table(self) -> PricingTable:
        return self._table

    def reload(self, table: PricingTable) -> None:
        """Replace the pricing table."""
        with self._lock:
            self._table = table
        logger.info("Pricing table reloaded with %d models", len(table.prices))

    def update(self, provider_id: str, model_id: str, pricing: ModelPricing) -> None:
        """Set or replace the price for one model."""
        with self._lock:
            prices = dict(self._table.prices)
            prices[(provider_id, model_id)] = pricing
            self._table = PricingTable(prices)

    def get_pricing(self, provider_id: str, model_id: str) -> ModelPricing:
        return self._table.get_pricing(provider_id, model_id)

    def cost_of(self, provider_id: str, model_id: str, usage: TokenUsage) -> Decimal:
        """Price usage against the current table."""
        return calculate_cost(self.get_pricing(provider_id, model_id), usage)
