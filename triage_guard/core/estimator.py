"""
Pre-flight cost estimation and post-call reconciliation.

The estimate gates a metered call against the caller's balance; the
reconciled figure is what actually gets debited.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from ..providers.base import ProviderRequest
from .pricing import ModelConfig, calculate_cost_cents, dollars_to_cents, token_cost
from .token_counter import TokenUsage, project_completion_tokens, project_prompt_tokens


# Safety margin applied to projected token cost
ESTIMATE_BUFFER_MULTIPLIER = Decimal("1.35")

DIRECT_COST_KEYS = ("total_cost", "cost")
COST_OBJECT_KEYS = ("usd", "amount", "value")


@dataclass(frozen=True)
class CostEstimate:
    """Projected token usage and price of a call before it is made."""
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    estimated_cents: int

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage(prompt_tokens=self.prompt_tokens, completion_tokens=self.completion_tokens)


def estimate_cost(
    request: ProviderRequest,
    model: ModelConfig,
    buffer_multiplier: Decimal = ESTIMATE_BUFFER_MULTIPLIER,
) -> CostEstimate:
    """Project token usage and cents cost of a request.

    Args:
        request: Built provider request (prompt size, output ceiling, reasoning flag)
        model: Model the request targets
        buffer_multiplier: Safety margin on the projected token cost

    Returns:
        CostEstimate; ``estimated_cents`` is 0 when the model has no pricing
    """
    prompt_tokens = project_prompt_tokens(request.prompt_characters)
    completion_tokens = project_completion_tokens(request.max_tokens, request.reasoning_enabled)

    estimated_cents = 0
    if model.pricing is not None:
        usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
        buffered = token_cost(model.pricing, usage) * Decimal(buffer_multiplier)
        estimated_cents = max(dollars_to_cents(buffered), model.pricing.minimum_charge_cents)

    return CostEstimate(
        prompt_tokens=prompt_tokens,
        completion_tokens=completion_tokens,
        total_tokens=prompt_tokens + completion_tokens,
        estimated_cents=estimated_cents,
    )


def reconcile_actual_cents(
    raw_usage: Optional[Mapping[str, Any]],
    reported_usage: Optional[TokenUsage],
    model: ModelConfig,
    estimate: Optional[CostEstimate],
    fallback_cents: Optional[int] = None,
) -> int:
    """Replace the pre-flight estimate with the best available actual cost.

    Preference order:
    1. A direct cost figure reported by the provider
    2. The sum of separately reported prompt/completion costs
    3. Tokens times model pricing (reported tokens preferred over the estimate's)
    4. The pre-flight estimate itself

    Args:
        raw_usage: Provider usage payload, as returned
        reported_usage: Token counts parsed from the provider response
        model: Model that served the call
        estimate: Pre-flight estimate
        fallback_cents: Cents to charge when nothing better is known

    Returns:
        Non-negative integer cents
    """
    usage_payload = raw_usage if isinstance(raw_usage, Mapping) else {}

    for key in DIRECT_COST_KEYS:
        direct = parse_cost_figure(usage_payload.get(key))
        if direct is not None:
            return max(0, dollars_to_cents(direct))

    prompt_cost = parse_cost_figure(usage_payload.get("prompt_cost"))
    completion_cost = parse_cost_figure(usage_payload.get("completion_cost"))
    if prompt_cost is not None or completion_cost is not None:
        total = (prompt_cost or Decimal("0")) + (completion_cost or Decimal("0"))
        return max(0, dollars_to_cents(total))

    usage = reported_usage
    if usage is None and estimate is not None:
        usage = estimate.usage
    if usage is not None:
        priced = calculate_cost_cents(model, usage)
        if priced is not None:
            return max(0, priced)

    if fallback_cents is None:
        fallback_cents = estimate.estimated_cents if estimate is not None else 0
    return max(0, int(fallback_cents))


def parse_cost_figure(value: Any) -> Optional[Decimal]:
    """Read a USD cost from a number, numeric string or ``{usd|amount|value}`` object."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return _finite_decimal(str(value))
    if isinstance(value, str):
        return _finite_decimal(value.strip())
    if isinstance(value, Mapping):
        for key in COST_OBJECT_KEYS:
            if key in value and not isinstance(value[key], Mapping):
                parsed = parse_cost_figure(value[key])
                if parsed is not None:
                    return parsed
    return None


def _finite_decimal(text: str) -> Optional[Decimal]:
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount
