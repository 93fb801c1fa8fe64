"""
Model registry and pricing.

Describes the callable model identities per provider: display label, prompt
and output limits, reasoning capability and per-token pricing.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Sequence

from .token_counter import TokenUsage


DEFAULT_MINIMUM_CHARGE_CENTS = 35


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model, in USD."""
    prompt_cost_per_1k: Decimal  # Cost per 1K prompt tokens
    completion_cost_per_1k: Decimal  # Cost per 1K completion tokens
    minimum_charge_cents: int = DEFAULT_MINIMUM_CHARGE_CENTS

    def __post_init__(self):
        """Validate pricing values are non-negative."""
        if self.prompt_cost_per_1k < 0:
            raise ValueError("prompt_cost_per_1k cannot be negative")
        if self.completion_cost_per_1k < 0:
            raise ValueError("completion_cost_per_1k cannot be negative")
        if self.minimum_charge_cents < 0:
            raise ValueError("minimum_charge_cents cannot be negative")


@dataclass(frozen=True)
class ModelConfig:
    """Static description of a callable model."""
    id: str
    label: str
    supports_reasoning: bool
    prompt_character_limit: int
    max_tokens: int
    pricing: Optional[ModelPricing] = None


class ModelRegistry:
    """Read-only list of models for one provider.

    Unknown identifiers resolve to the designated default so a stale client
    selection never fails a run.
    """

    def __init__(self, models: Sequence[ModelConfig], provider_label: str, default_id: Optional[str] = None):
        if not models:
            raise ValueError("models cannot be empty")
        self._models = {model.id: model for model in models}
        self._ordered = tuple(models)
        self.provider_label = provider_label
        self.default_id = default_id or models[0].id
        if self.default_id not in self._models:
            raise ValueError(f"Default model not registered: {self.default_id}")

    @property
    def models(self) -> Sequence[ModelConfig]:
        return self._ordered

    @property
    def default(self) -> ModelConfig:
        return self._models[self.default_id]

    def resolve(self, model_id: Optional[str]) -> ModelConfig:
        """Get a model by id, falling back to the default."""
        if model_id and model_id in self._models:
            return self._models[model_id]
        return self.default

    def supports_id(self, model_id: Optional[str]) -> bool:
        return bool(model_id) and model_id in self._models

    def label_for(self, model: ModelConfig) -> str:
        """Human readable, provider-prefixed label."""
        return f"{self.provider_label}: {model.label}"


OPENROUTER_MODELS = ModelRegistry(
    [
        ModelConfig(
            id="x-ai/grok-4-fast:free",
            label="xAI Grok-4 Fast (free)",
            supports_reasoning=True,
            prompt_character_limit=2_000_000,
            max_tokens=8192,
        ),
        ModelConfig(
            id="x-ai/grok-4-fast",
            label="xAI Grok-4 Fast",
            supports_reasoning=True,
            prompt_character_limit=2_000_000,
            max_tokens=8192,
            pricing=ModelPricing(
                prompt_cost_per_1k=Decimal("0.0002"),
                completion_cost_per_1k=Decimal("0.0005"),
            ),
        ),
        ModelConfig(
            id="openai/gpt-oss-120b",
            label="OpenAI GPT-OSS-120B",
            supports_reasoning=True,
            prompt_character_limit=12000,
            max_tokens=4096,
            pricing=ModelPricing(
                prompt_cost_per_1k=Decimal("0.0001"),
                completion_cost_per_1k=Decimal("0.0005"),
            ),
        ),
    ],
    provider_label="OpenRouter",
)

GEMINI_MODELS = ModelRegistry(
    [
        ModelConfig(
            id="gemini-2.5-flash",
            label="Gemini 2.5 Flash",
            supports_reasoning=True,
            prompt_character_limit=4000,
            max_tokens=2048,
            pricing=ModelPricing(
                prompt_cost_per_1k=Decimal("0.0003"),
                completion_cost_per_1k=Decimal("0.0025"),
            ),
        ),
    ],
    provider_label="Gemini",
)


def dollars_to_cents(amount: Decimal) -> int:
    """Convert a USD amount to whole cents, rounding half up."""
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def token_cost(pricing: ModelPricing, usage: TokenUsage) -> Decimal:
    """Raw USD cost of a token usage under the given pricing."""
    # Calculate prompt cost: (tokens / 1000) * cost_per_1k
    prompt_cost = (Decimal(usage.prompt_tokens) / Decimal("1000")) * pricing.prompt_cost_per_1k

    # Calculate completion cost: (tokens / 1000) * cost_per_1k
    completion_cost = (Decimal(usage.completion_tokens) / Decimal("1000")) * pricing.completion_cost_per_1k

    return prompt_cost + completion_cost


def calculate_cost_cents(model: ModelConfig, usage: TokenUsage) -> Optional[int]:
    """Calculate the cost of a usage in cents.

    Args:
        model: Model whose pricing applies
        usage: Token usage data

    Returns:
        Cost in cents (half-up rounded), or None if the model carries no pricing
    """
    if model.pricing is None:
        return None
    return dollars_to_cents(token_cost(model.pricing, usage))
