"""
Unit tests for pricing calculations.

Tests cost accuracy, rounding behavior, and error handling.
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

from care_guard.core.pricing import PRICING_TABLE, calculate_cost, operation_cost
from care_guard.core.token_counter import TokenUsage


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150

    def test_negative_tokens_rejected(self):
        with pytest.raises(ValueError):
            TokenUsage(prompt_tokens=-1, completion_tokens=0)

    def test_from_response(self):
        response = SimpleNamespace(usage=SimpleNamespace(prompt_tokens=12, completion_tokens=None))
        usage = TokenUsage.from_response(response)
        assert usage == TokenUsage(12, 0)

    def test_from_response_without_usage(self):
        with pytest.raises(ValueError, match="missing usage"):
            TokenUsage.from_response(SimpleNamespace(usage=None))


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        """Verify pricing retrieval for supported models."""
        pricing = PRICING_TABLE.get_pricing("gemini-1.5-pro")
        assert pricing.prompt_cost_per_1k == Decimal("0.00125")
        assert pricing.completion_cost_per_1k == Decimal("0.005")

    def test_unsupported_model_raises_error(self):
        """Verify error for unknown models."""
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            PRICING_TABLE.get_pricing("unknown-model")

    def test_operation_cost(self):
        assert operation_cost("nutrition", "search_recipes") == 0.002
        assert operation_cost("nutrition", "analyze_nutrition") == 0.004
        assert operation_cost("identity", "get_user") == 0.0

    def test_unpriced_operation_raises_error(self):
        with pytest.raises(ValueError, match="Unpriced operation: nutrition.teleport"):
            operation_cost("nutrition", "teleport")


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_exact_cost_gpt4o_mini(self):
        usage = TokenUsage(prompt_tokens=2000, completion_tokens=1000)
        # Prompt: 2000/1000 * $0.00015 = $0.0003
        # Completion: 1000/1000 * $0.0006 = $0.0006
        assert calculate_cost("gpt-4o-mini", usage) == 0.0009

    def test_rounding_up_behavior(self):
        """Verify costs round UP (conservative bias)."""
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=500)
        # $0.00125 + $0.0025 = $0.00375 -> $0.0038
        assert calculate_cost("gemini-1.5-pro", usage) == 0.0038

    def test_tiny_usage_rounds_up_to_smallest_unit(self):
        usage = TokenUsage(prompt_tokens=1, completion_tokens=1)
        assert calculate_cost("gemini-1.5-flash", usage) == 0.0001

    def test_rounding_up_edge_case(self):
        exact = TokenUsage(prompt_tokens=4000, completion_tokens=0)
        assert calculate_cost("gemini-1.5-flash", exact) == 0.0003
        over = TokenUsage(prompt_tokens=4001, completion_tokens=0)
        assert calculate_cost("gemini-1.5-flash", over) == 0.0004

    def test_large_token_counts(self):
        usage = TokenUsage(prompt_tokens=1000000, completion_tokens=500000)
        # $1.25 + $2.50
        assert calculate_cost("gemini-1.5-pro", usage) == 3.75

    def test_zero_tokens_cost(self):
        assert calculate_cost("gemini-1.5-flash", TokenUsage(0, 0)) == 0.0

    def test_unknown_model_error(self):
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            calculate_cost("unknown-model", usage)
