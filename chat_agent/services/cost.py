"""Cost calculation for completion tokens and tool surcharges.

Handles cost computations for the models the agent talks to.  All
arithmetic is done in ``Decimal`` and every intermediate amount is
quantized to 6 decimal places before it is summed, so the same inputs
always produce the same breakdown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from chat_agent.contracts import SearchUsage, TokenUsage

logger = logging.getLogger(__name__)

COST_QUANTUM = Decimal("0.000001")
_MILLION = Decimal("1000000")
_THOUSAND = Decimal("1000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_per_million: Decimal   # USD per 1M input tokens
    output_per_million: Decimal  # USD per 1M output tokens


# Known models.  Dated snapshots (e.g. ``claude-sonnet-4-5-20250929``)
# resolve through the longest matching prefix.
PRICING_TABLE: dict[str, ModelPricing] = {
    "claude-opus-4-1": ModelPricing(Decimal("15.00"), Decimal("75.00")),
    "claude-opus-4": ModelPricing(Decimal("15.00"), Decimal("75.00")),
    "claude-sonnet-4-5": ModelPricing(Decimal("3.00"), Decimal("15.00")),
    "claude-sonnet-4": ModelPricing(Decimal("3.00"), Decimal("15.00")),
    "claude-haiku-4-5": ModelPricing(Decimal("1.00"), Decimal("5.00")),
    "claude-3-5-haiku": ModelPricing(Decimal("0.80"), Decimal("4.00")),
    "gpt-4o-mini": ModelPricing(Decimal("0.15"), Decimal("0.60")),
    "gpt-4o": ModelPricing(Decimal("2.50"), Decimal("10.00")),
}

# Fallback for unknown models: mid-tier (Sonnet) pricing.
DEFAULT_PRICING = ModelPricing(Decimal("3.00"), Decimal("15.00"))

# Web search tool calls, USD per 1 000 calls
SEARCH_COST_PER_1K_CALLS: dict[str, Decimal] = {
    "gpt-4o": Decimal("25.00"),
    "gpt-4o-mini": Decimal("25.00"),
    "claude": Decimal("10.00"),
}
DEFAULT_SEARCH_COST_PER_1K_CALLS = Decimal("10.00")


def _quantize(amount: Decimal) -> Decimal:
    return amount.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def _longest_prefix(model: str, table: dict[str, Any]) -> str | None:
    matches = [key for key in table if model == key or model.startswith(key)]
    return max(matches, key=len) if matches else None


@dataclass(frozen=True)
class CostBreakdown:
    model: str
    input_tokens: int
    output_tokens: int
    input_cost: Decimal
    output_cost: Decimal
    search_calls: int
    search_cost: Decimal
    total_cost: Decimal

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def as_dict(self) -> dict[str, Any]:
        """JSON-friendly view (costs as floats)."""
        return {
            "model": self.model,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
            "input_cost": float(self.input_cost),
            "output_cost": float(self.output_cost),
            "search_calls": self.search_calls,
            "search_cost": float(self.search_cost),
            "total_cost": float(self.total_cost),
        }


class CostCalculator:
    """Stateless cost function over a fixed set of pricing tables."""

    def __init__(
        self,
        pricing: dict[str, ModelPricing] | None = None,
        *,
        default_pricing: ModelPricing = DEFAULT_PRICING,
        search_pricing: dict[str, Decimal] | None = None,
        default_search_price: Decimal = DEFAULT_SEARCH_COST_PER_1K_CALLS,
    ) -> None:
        self._pricing = PRICING_TABLE if pricing is None else pricing
        self._default_pricing = default_pricing
        self._search_pricing = SEARCH_COST_PER_1K_CALLS if search_pricing is None else search_pricing
        self._default_search_price = default_search_price

    def pricing_for(self, model: str) -> ModelPricing:
        """Resolve pricing for ``model``; unknown models get the default."""
        key = _longest_prefix(model, self._pricing)
        if key is None:
            logger.warning("Unknown model %s, using default pricing", model)
            return self._default_pricing
        return self._pricing[key]

    def search_cost(self, usage: SearchUsage, model: str) -> Decimal:
        """Surcharge for ``usage.search_calls`` web-search calls."""
        key = _longest_prefix(usage.model or model, self._search_pricing)
        per_1k = self._search_pricing[key] if key else self._default_search_price
        return _quantize(Decimal(usage.search_calls) / _THOUSAND * per_1k)

    def cost(
        self,
        model: str,
        usage: TokenUsage,
        search: SearchUsage | None = None,
    ) -> CostBreakdown:
        pricing = self.pricing_for(model)
        input_cost = _quantize(Decimal(usage.input_tokens) / _MILLION * pricing.input_per_million)
        output_cost = _quantize(Decimal(usage.output_tokens) / _MILLION * pricing.output_per_million)

        search_calls = search.search_calls if search else 0
        search_cost = self.search_cost(search, model) if search and search_calls > 0 else Decimal("0")
        search_cost = _quantize(search_cost)

        return CostBreakdown(
            model=model,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            input_cost=input_cost,
            output_cost=output_cost,
            search_calls=search_calls,
            search_cost=search_cost,
            total_cost=_quantize(input_cost + output_cost + search_cost),
        )


default_calculator = CostCalculator()


# ── Display helpers ─────────────────────────────────────────────────


def format_cost(cost: Decimal | float) -> str:
    """``0.000123`` → ``"$0.000123"``."""
    return f"${_quantize(Decimal(str(cost)))}"


def format_tokens(tokens: int) -> str:
    return f"{tokens:,} tokens"


def format_search_calls(calls: int) -> str:
    return f"{calls} search{'' if calls == 1 else 'es'}"
