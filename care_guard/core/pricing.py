"""
Pricing calculations and rate management.

Handles cost computations for metered external services.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict

from .token_counter import TokenUsage

COST_QUANTUM = Decimal("0.0001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific generative model."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing for generative models and flat-rate service operations."""
    models: Dict[str, ModelPricing]
    operations: Dict[str, Decimal]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        if model not in self.models:
            raise ValueError(f"Unsupported model: {model}")
        return self.models[model]

    def get_operation_cost(self, service: str, operation: str) -> Decimal:
        """Flat cost of one call to ``service.operation``.

        Raises:
            ValueError: If the operation has no price
        """
        key = f"{service}.{operation}"
        if key not in self.operations:
            raise ValueError(f"Unpriced operation: {key}")
        return self.operations[key]


# Fixed pricing table - no dynamic fetching, no defaults
PRICING_TABLE = PricingTable(
    models={
        "gemini-1.5-flash": ModelPricing(
            prompt_cost_per_1k=Decimal("0.000075"),
            completion_cost_per_1k=Decimal("0.0003")
        ),
        "gemini-1.5-pro": ModelPricing(
            prompt_cost_per_1k=Decimal("0.00125"),
            completion_cost_per_1k=Decimal("0.005")
        ),
        "gpt-4o-mini": ModelPricing(
            prompt_cost_per_1k=Decimal("0.00015"),
            completion_cost_per_1k=Decimal("0.0006")
        ),
    },
    operations={
        "nutrition.search_recipes": Decimal("0.002"),
        "nutrition.analyze_nutrition": Decimal("0.004"),
        "payments.create_checkout_session": Decimal("0"),
        "payments.get_subscription": Decimal("0"),
        "identity.get_user": Decimal("0"),
    }
)


def calculate_cost(model: str, usage: TokenUsage) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data

    Returns:
        Total cost rounded UP to four decimal places

    Raises:
        ValueError: If model is not supported
    """
    pricing = PRICING_TABLE.get_pricing(model)

    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    total_cost = prompt_cost + completion_cost
    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def operation_cost(service: str, operation: str) -> float:
    """Flat cost of one service operation, rounded UP to four decimal places."""
    cost = PRICING_TABLE.get_operation_cost(service, operation)
    return float(cost.quantize(COST_QUANTUM, rounding=ROUND_UP))
