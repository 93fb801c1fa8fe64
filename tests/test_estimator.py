"""
Unit tests for pre-flight estimation and post-call reconciliation.
"""

from decimal import Decimal

import pytest

from triage_guard.core.estimator import (
    CostEstimate,
    estimate_cost,
    parse_cost_figure,
    reconcile_actual_cents,
)
from triage_guard.core.pricing import OPENROUTER_MODELS, ModelConfig, ModelPricing
from triage_guard.core.token_counter import (
    TokenUsage,
    project_completion_tokens,
    project_prompt_tokens,
)
from triage_guard.providers.base import ProviderRequest


PRICED_MODEL = ModelConfig(
    id="test/priced",
    label="Priced",
    supports_reasoning=True,
    prompt_character_limit=50000,
    max_tokens=2048,
    pricing=ModelPricing(prompt_cost_per_1k=Decimal("0.10"), completion_cost_per_1k=Decimal("0.30")),
)


def make_request(prompt_characters=38000, max_tokens=2048, reasoning_enabled=False):
    return ProviderRequest(
        model_id=PRICED_MODEL.id,
        payload={},
        prompt_characters=prompt_characters,
        max_tokens=max_tokens,
        reasoning_enabled=reasoning_enabled,
    )


class TestTokenProjection:
    """Test character-based token projections."""

    def test_prompt_tokens(self):
        """Prompt tokens are ceil(chars / 3.8) with a floor of 400."""
        assert project_prompt_tokens(38000) == 10000
        assert project_prompt_tokens(38001) == 10001
        assert project_prompt_tokens(100) == 400

    def test_completion_tokens(self):
        """Completion tokens use the ratio and clamp to [512, max_tokens]."""
        assert project_completion_tokens(2048, reasoning_enabled=False) == 1024
        assert project_completion_tokens(2048, reasoning_enabled=True) == 1331
        assert project_completion_tokens(600, reasoning_enabled=False) == 512
        assert project_completion_tokens(8192, reasoning_enabled=True) == 5325


class TestEstimateCost:
    """Test cost estimates."""

    def test_buffered_estimate(self):
        """Estimate applies the 1.35 buffer and rounds half up."""
        estimate = estimate_cost(make_request(), PRICED_MODEL)
        # (10 * 0.10 + 1.024 * 0.30) * 1.35 = 1.76472 -> 176 cents
        assert estimate.prompt_tokens == 10000
        assert estimate.completion_tokens == 1024
        assert estimate.total_tokens == 11024
        assert estimate.estimated_cents == 176

    def test_minimum_charge(self):
        """Small calls cost at least the minimum charge."""
        estimate = estimate_cost(make_request(prompt_characters=100, max_tokens=600), PRICED_MODEL)
        # (0.4 * 0.10 + 0.512 * 0.30) * 1.35 = 0.26136 -> 26 cents, raised to 35
        assert estimate.estimated_cents == 35

    def test_unpriced_model(self):
        """Models without pricing estimate to zero cents."""
        estimate = estimate_cost(make_request(), OPENROUTER_MODELS.default)
        assert estimate.estimated_cents == 0
        assert estimate.prompt_tokens == 10000


class TestReconcile:
    """Test reconciliation precedence."""

    def setup_method(self):
        self.estimate = estimate_cost(make_request(), PRICED_MODEL)

    def test_direct_cost_wins(self):
        """A direct cost figure ignores token counts."""
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=1000)
        raw = {"total_cost": 0.5, "prompt_tokens": 1000, "completion_tokens": 1000}

        assert reconcile_actual_cents(raw, usage, PRICED_MODEL, self.estimate) == 50

    def test_direct_cost_shapes(self):
        """Direct cost accepts strings and nested objects."""
        assert reconcile_actual_cents({"cost": "0.123"}, None, PRICED_MODEL, self.estimate) == 12
        assert reconcile_actual_cents({"cost": {"usd": 0.456}}, None, PRICED_MODEL, self.estimate) == 46

    def test_split_costs(self):
        """Separately reported prompt and completion costs are summed."""
        raw = {"prompt_cost": 0.1, "completion_cost": "0.05"}
        assert reconcile_actual_cents(raw, None, PRICED_MODEL, self.estimate) == 15

    def test_reported_tokens_times_pricing(self):
        """Without cost figures, reported tokens are priced."""
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=1000)
        assert reconcile_actual_cents({}, usage, PRICED_MODEL, self.estimate) == 40

    def test_removing_direct_cost_falls_through_to_tokens(self):
        """The same payload without its direct figure is priced by tokens."""
        usage = TokenUsage(prompt_tokens=1000, completion_tokens=1000)
        raw = {"total_cost": 0.5}

        assert reconcile_actual_cents(raw, usage, PRICED_MODEL, self.estimate) == 50
        del raw["total_cost"]
        assert reconcile_actual_cents(raw, usage, PRICED_MODEL, self.estimate) == 40

    def test_estimated_tokens_when_none_reported(self):
        """Estimate token counts are priced without the buffer."""
        # 10 * 0.10 + 1.024 * 0.30 = 1.3072 -> 131 cents
        assert reconcile_actual_cents(None, None, PRICED_MODEL, self.estimate) == 131

    def test_falls_back_to_estimate(self):
        """Unpriced models fall back to the estimate or the given fallback."""
        estimate = CostEstimate(prompt_tokens=400, completion_tokens=512, total_tokens=912, estimated_cents=35)
        model = OPENROUTER_MODELS.default

        assert reconcile_actual_cents({}, None, model, estimate) == 35
        assert reconcile_actual_cents({}, None, model, estimate, fallback_cents=12) == 12
        assert reconcile_actual_cents({}, None, model, None) == 0

    def test_never_negative(self):
        """Negative provider figures clamp to zero."""
        assert reconcile_actual_cents({"total_cost": "-1"}, None, PRICED_MODEL, self.estimate) == 0


class TestParseCostFigure:
    """Test cost figure parsing."""

    @pytest.mark.parametrize("value,expected", [
        (0.25, Decimal("0.25")),
        ("1.5", Decimal("1.5")),
        ({"amount": "2"}, Decimal("2")),
        ({"value": 3}, Decimal("3")),
    ])
    def test_valid_shapes(self, value, expected):
        """Numbers, numeric strings and cost objects parse."""
        assert parse_cost_figure(value) == expected

    @pytest.mark.parametrize("value", [None, True, "abc", "", "nan", {"other": 1}, [1]])
    def test_invalid_shapes(self, value):
        """Everything else is ignored."""
        assert parse_cost_figure(value) is None
