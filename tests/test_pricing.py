"""
Unit tests for pricing calculations.

Tests the model registry, cost accuracy and rounding behavior.
"""

import pytest
from decimal import Decimal

from triage_guard.core.pricing import (
    DEFAULT_MINIMUM_CHARGE_CENTS,
    GEMINI_MODELS,
    OPENROUTER_MODELS,
    ModelConfig,
    ModelPricing,
    ModelRegistry,
    calculate_cost_cents,
    dollars_to_cents,
    token_cost,
)
from triage_guard.core.token_counter import TokenUsage, usage_from_counts


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens is computed correctly."""
        usage = TokenUsage(prompt_tokens=100, completion_tokens=50)
        assert usage.total_tokens == 150
        assert usage.to_dict() == {"promptTokens": 100, "completionTokens": 50, "totalTokens": 150}

    def test_usage_from_counts(self):
        """Both counts must be present and non-negative."""
        assert usage_from_counts(10, 5) == TokenUsage(prompt_tokens=10, completion_tokens=5)
        assert usage_from_counts(10, None) is None
        assert usage_from_counts(-1, 5) is None
        assert usage_from_counts(True, 5) is None


class TestModelRegistry:
    """Test model lookup."""

    def test_resolve_known_model(self):
        """Known ids resolve to their config."""
        model = OPENROUTER_MODELS.resolve("openai/gpt-oss-120b")
        assert model.prompt_character_limit == 12000
        assert model.max_tokens == 4096

    def test_unknown_model_falls_back_to_default(self):
        """Unknown or missing ids resolve to the default, never fail."""
        assert OPENROUTER_MODELS.resolve("nope/model").id == "x-ai/grok-4-fast:free"
        assert OPENROUTER_MODELS.resolve(None).id == "x-ai/grok-4-fast:free"
        assert OPENROUTER_MODELS.supports_id("nope/model") is False
        assert OPENROUTER_MODELS.supports_id("x-ai/grok-4-fast") is True

    def test_free_model_has_no_pricing(self):
        """The free tier carries no pricing data."""
        assert OPENROUTER_MODELS.default.pricing is None
        assert GEMINI_MODELS.default.pricing is not None

    def test_label(self):
        """Labels are prefixed with the provider."""
        model = GEMINI_MODELS.default
        assert GEMINI_MODELS.label_for(model) == "Gemini: Gemini 2.5 Flash"

    def test_invalid_registry(self):
        """Registries need models and a registered default."""
        with pytest.raises(ValueError, match="models cannot be empty"):
            ModelRegistry([], provider_label="X")

        model = ModelConfig(id="a", label="A", supports_reasoning=False, prompt_character_limit=10, max_tokens=10)
        with pytest.raises(ValueError, match="Default model not registered"):
            ModelRegistry([model], provider_label="X", default_id="b")


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_exact_cost(self):
        """Verify exact cost calculation."""
        pricing = ModelPricing(prompt_cost_per_1k=Decimal("0.10"), completion_cost_per_1k=Decimal("0.30"))
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=500)
        # Prompt: 1000/1000 * $0.10 = $0.10
        # Completion: 500/1000 * $0.30 = $0.15
        assert token_cost(pricing, usage) == Decimal("0.25")

    def test_cents_for_priced_model(self):
        """Cost in cents rounds half up."""
        model = GEMINI_MODELS.default
        usage = TokenUsage(prompt_tokens=10000, completion_tokens=10000)
        # 10 * 0.0003 + 10 * 0.0025 = 0.028 -> 2.8 cents
        assert calculate_cost_cents(model, usage) == 3

    def test_unpriced_model_returns_none(self):
        """Models without pricing have no cost."""
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=1000)
        assert calculate_cost_cents(OPENROUTER_MODELS.default, usage) is None

    def test_half_up_rounding(self):
        """Half cents round away from zero."""
        assert dollars_to_cents(Decimal("0.125")) == 13
        assert dollars_to_cents(Decimal("0.124")) == 12
        assert dollars_to_cents(Decimal("0.5")) == 50

    def test_negative_pricing_rejected(self):
        """Pricing values cannot be negative."""
        with pytest.raises(ValueError, match="prompt_cost_per_1k cannot be negative"):
            ModelPricing(prompt_cost_per_1k=Decimal("-1"), completion_cost_per_1k=Decimal("0"))

    def test_default_minimum_charge(self):
        """Minimum charge defaults to the named constant."""
        pricing = ModelPricing(prompt_cost_per_1k=Decimal("0"), completion_cost_per_1k=Decimal("0"))
        assert pricing.minimum_charge_cents == DEFAULT_MINIMUM_CHARGE_CENTS == 35
