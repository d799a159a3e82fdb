"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, hot reload and error handling.
"""

from decimal import Decimal

import pytest

from ai_cost_router.core.pricing import (
    ModelPricing,
    PricingRegistry,
    PricingTable,
    calculate_cost,
    estimate_cost,
)
from ai_cost_router.core.token_counter import TokenUsage, estimate_prompt_tokens


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150

    def test_total_bytes(self):
        usage = TokenUsage(request_bytes=10, response_bytes=32)
        assert usage.total_bytes == 42

    def test_negative_counts_rejected(self):
        with pytest.raises(ValueError, match="prompt_tokens cannot be negative"):
            TokenUsage(prompt_tokens=-1)

    def test_prompt_token_estimate_rounds_up(self):
        assert estimate_prompt_tokens("abcde") == 2
        assert estimate_prompt_tokens("") == 0


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        """Verify pricing retrieval for supported models."""
        table = PricingTable({("openai", "gpt-4o"): ModelPricing.flat("0.00001")})
        pricing = table.get_pricing("openai", "gpt-4o")
        assert pricing.prompt_cost_per_token == Decimal("0.00001")
        assert pricing.completion_cost_per_token == Decimal("0.00001")

    def test_unsupported_model_raises_error(self):
        """Verify error for unknown models."""
        table = PricingTable({})
        with pytest.raises(ValueError, match="Unsupported model: openai/unknown-model"):
            table.get_pricing("openai", "unknown-model")

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            ModelPricing(prompt_cost_per_token=Decimal("-1"), completion_cost_per_token=Decimal("0"))


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_flat_per_token_price(self):
        """120 tokens at $0.002/token costs $0.24."""
        usage = TokenUsage(prompt_tokens=20, completion_tokens=100)
        assert calculate_cost(ModelPricing.flat("0.002"), usage) == Decimal("0.24")

    def test_split_prompt_and_completion_prices(self):
        pricing = ModelPricing(
            prompt_cost_per_token=Decimal("0.00001"),
            completion_cost_per_token=Decimal("0.00003"),
        )
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=500)
        # 1000 * 0.00001 + 500 * 0.00003 = 0.01 + 0.015
        assert calculate_cost(pricing, usage) == Decimal("0.025")

    def test_byte_pricing(self):
        pricing = ModelPricing(
            prompt_cost_per_token=Decimal("0"),
            completion_cost_per_token=Decimal("0"),
            cost_per_byte=Decimal("0.000001"),
        )
        usage = TokenUsage(request_bytes=300, response_bytes=700)
        assert calculate_cost(pricing, usage) == Decimal("0.001")

    def test_rounding_up_behavior(self):
        """Verify costs round UP to micro-dollars (conservative bias)."""
        usage = TokenUsage(prompt_tokens=1, completion_tokens=0)
        cost = calculate_cost(ModelPricing.flat("0.0000001"), usage)
        assert cost == Decimal("0.000001")

    def test_zero_tokens_cost(self):
        assert calculate_cost(ModelPricing.flat("0.002"), TokenUsage()) == Decimal("0")

    def test_estimate_matches_calculation(self):
        pricing = ModelPricing.flat("0.002")
        assert estimate_cost(pricing, 20, 100) == Decimal("0.24")


class TestPricingRegistry:
    """Test hot-reloadable pricing."""

    def test_reload_replaces_table(self):
        registry = PricingRegistry(PricingTable({("x", "m"): ModelPricing.flat("0.001")}))
        before = registry.table

        registry.reload(PricingTable({("x", "m"): ModelPricing.flat("0.002")}))

        assert registry.get_pricing("x", "m").prompt_cost_per_token == Decimal("0.002")
        # Readers holding the old table keep the old prices
        assert before.get_pricing("x", "m").prompt_cost_per_token == Decimal("0.001")

    def test_update_single_model(self):
        registry = PricingRegistry()
        registry.update("y", "m2", ModelPricing.flat("0.003"))
        assert ("y", "m2") in registry.table
        assert registry.cost_of("y", "m2", TokenUsage(prompt_tokens=10)) == Decimal("0.03")
