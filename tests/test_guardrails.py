"""
Unit tests for credit guardrails.
"""

import pytest

from triage_guard.core.errors import InsufficientCreditError
from triage_guard.core.guardrails import CreditCheck, clamp_debit, enforce_credit_limit


class TestEnforceCreditLimit:
    """Test the pre-flight balance check."""

    def test_estimate_within_balance(self):
        """An estimate equal to the balance is allowed."""
        check = enforce_credit_limit(balance_cents=35, estimated_cents=35)

        assert check == CreditCheck(balance_cents=35, estimated_cents=35)
        assert check.headroom_cents == 0

    def test_estimate_exceeds_balance(self):
        """An estimate above the balance is rejected with both figures."""
        with pytest.raises(InsufficientCreditError) as exc_info:
            enforce_credit_limit(balance_cents=20, estimated_cents=35)

        assert exc_info.value.balance_cents == 20
        assert exc_info.value.requested_cents == 35


class TestClampDebit:
    """Test the debit clamp."""

    def test_actual_below_balance(self):
        """Actual cost under the confirmed balance is charged in full."""
        assert clamp_debit(50, CreditCheck(balance_cents=1000, estimated_cents=35)) == 50

    def test_actual_above_balance(self):
        """Actual cost never exceeds the confirmed balance."""
        assert clamp_debit(500, CreditCheck(balance_cents=40, estimated_cents=35)) == 40

    def test_negative_actual(self):
        """Negative figures clamp to zero."""
        assert clamp_debit(-5, CreditCheck(balance_cents=40, estimated_cents=35)) == 0
