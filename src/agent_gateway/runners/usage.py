"""Token pricing and usage accumulation.

Accumulation policy differs per backend because the upstream protocols
differ:

- CLI backend: standalone `usage` lines are incremental, so they are summed
  and priced with the table below. The closing `result` line reports the
  CLI's own cumulative totals and replaces the summed token counts.
- SDK backend: only the final ResultMessage carries usage and it is already
  cumulative, so the last report wins.

In both cases cost never decreases during a run.
"""

from dataclasses import dataclass
from typing import Any

from agent_gateway.runners.models import model_family
from agent_gateway.schemas.streaming import TokenUsage

_PER_MILLION = 1_000_000


@dataclass(frozen=True)
class ModelPricing:
    """USD per million tokens."""

    input: float
    output: float
    cache_read: float
    cache_creation: float


PRICING: dict[str, ModelPricing] = {
    "haiku": ModelPricing(input=1.0, output=5.0, cache_read=0.10, cache_creation=1.25),
    "sonnet": ModelPricing(input=3.0, output=15.0, cache_read=0.30, cache_creation=3.75),
    "opus": ModelPricing(input=15.0, output=75.0, cache_read=1.50, cache_creation=18.75),
}


def pricing_for(model_id: str | None) -> ModelPricing:
    return PRICING[model_family(model_id)]


def calculate_cost(usage: TokenUsage, pricing: ModelPricing) -> float:
    """Price a usage snapshot; ignores whatever cost_usd it already carries."""
    return (
        usage.input_tokens * pricing.input
        + usage.output_tokens * pricing.output
        + usage.cache_read_tokens * pricing.cache_read
        + usage.cache_creation_tokens * pricing.cache_creation
    ) / _PER_MILLION


def usage_from_report(report: dict[str, Any]) -> TokenUsage:
    """Map an Anthropic-style usage dict to TokenUsage (cost left at zero)."""
    return TokenUsage(
        input_tokens=int(report.get("input_tokens") or 0),
        output_tokens=int(report.get("output_tokens") or 0),
        cache_read_tokens=int(report.get("cache_read_input_tokens") or 0),
        cache_creation_tokens=int(report.get("cache_creation_input_tokens") or 0),
    )


def add_usage(total: TokenUsage, increment: TokenUsage, pricing: ModelPricing) -> TokenUsage:
    """Sum an incremental report into the running total and re-price it."""
    summed = TokenUsage(
        input_tokens=total.input_tokens + increment.input_tokens,
        output_tokens=total.output_tokens + increment.output_tokens,
        cache_read_tokens=total.cache_read_tokens + increment.cache_read_tokens,
        cache_creation_tokens=total.cache_creation_tokens + increment.cache_creation_tokens,
    )
    summed.cost_usd = max(total.cost_usd, calculate_cost(summed, pricing))
    return summed


def replace_usage(
    total: TokenUsage,
    report: TokenUsage,
    reported_cost: float | None,
    pricing: ModelPricing,
) -> TokenUsage:
    """Adopt a cumulative report as authoritative."""
    cost = reported_cost if reported_cost is not None else calculate_cost(report, pricing)
    return report.model_copy(update={"cost_usd": max(total.cost_usd, cost)})
