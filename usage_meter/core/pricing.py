"""
Pricing calculations and rate management.

Handles cost computations for the models the summarizer talks to.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional
from decimal import Decimal, ROUND_UP

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

# Ledger and counters keep costs to the micro-dollar
COST_QUANTUM = Decimal("0.000001")

DEFAULT_MODEL = "gpt-4o-mini"

# Providers pin snapshots as "<model>-YYYY-MM-DD"
DATED_SUFFIX = re.compile(r"-\d{4}-\d{2}-\d{2}$")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_cost_per_1k: Decimal  # Cost per 1K input tokens
    output_cost_per_1k: Decimal  # Cost per 1K output tokens

    def __post_init__(self):
        """Validate rates are non-negative."""
        if self.input_cost_per_1k < 0:
            raise ValueError("input_cost_per_1k cannot be negative")
        if self.output_cost_per_1k < 0:
            raise ValueError("output_cost_per_1k cannot be negative")


@dataclass(frozen=True)
class PricingTable:
    """Pricing table for supported models with a fallback model."""
    prices: Dict[str, ModelPricing]
    default_model: str = DEFAULT_MODEL

    def __post_init__(self):
        """Validate the fallback model is priced."""
        if self.default_model not in self.prices:
            raise ValueError(f"Default model {self.default_model!r} has no pricing")

    def find_pricing(self, model: str) -> Optional[ModelPricing]:
        """Pricing for a model or its dated snapshot, or None if unpriced.

        ``gpt-4o-2024-08-06`` is priced as ``gpt-4o``.
        """
        if not model:
            return None
        pricing = self.prices.get(model)
        if pricing is None:
            pricing = self.prices.get(DATED_SUFFIX.sub("", model))
        return pricing

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Providers may answer with a model alias we have never seen, so an
        unknown model is priced at the default model's rates instead of
        raising.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model, or for the default model
        """
        pricing = self.find_pricing(model)
        if pricing is None:
            logger.debug(f"No pricing for model {model!r}, using {self.default_model!r}")
            return self.prices[self.default_model]
        return pricing


DEFAULT_PRICING_TABLE = PricingTable({
    "gpt-4o-mini": ModelPricing(
        input_cost_per_1k=Decimal("0.00015"),
        output_cost_per_1k=Decimal("0.0006")
    ),
    "gpt-4o": ModelPricing(
        input_cost_per_1k=Decimal("0.0025"),
        output_cost_per_1k=Decimal("0.01")
    ),
    "gpt-3.5-turbo": ModelPricing(
        input_cost_per_1k=Decimal("0.0005"),
        output_cost_per_1k=Decimal("0.0015")
    )
})


def calculate_cost(pricing: ModelPricing, usage: TokenUsage) -> Decimal:
    """Calculate total cost for token usage with conservative rounding.

    Args:
        pricing: Rates to apply
        usage: Token usage data

    Returns:
        Total cost rounded UP to COST_QUANTUM
    """
    # (tokens / 1000) * cost_per_1k
    input_cost = (Decimal(usage.input_tokens) / Decimal("1000")) * pricing.input_cost_per_1k
    output_cost = (Decimal(usage.output_tokens) / Decimal("1000")) * pricing.output_cost_per_1k

    total_cost = input_cost + output_cost
    return total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP)


class CostCalculator:
    """Computes the dollar cost of a completion from a pricing table."""

    def __init__(self, table: PricingTable = DEFAULT_PRICING_TABLE):
        self.table = table

    def compute(self, model: str, input_tokens: int, output_tokens: int) -> Decimal:
        """Compute the cost of one completion.

        Args:
            model: Model identifier reported by the provider
            input_tokens: Prompt tokens consumed
            output_tokens: Completion tokens produced

        Returns:
            Cost in USD, never negative

        Raises:
            ValueError: If a token count is negative
        """
        usage = TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens)
        return calculate_cost(self.table.get_pricing(model), usage)
