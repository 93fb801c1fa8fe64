"""
Credit guardrails for metered calls.

Enforcement Order:
1. Pre-flight check - the estimated charge must fit the current balance
2. Debit clamp - the final charge never exceeds the balance confirmed in step 1

The ledger re-validates the clamped amount inside its own transaction, so a
balance that moved in between surfaces as a ledger error rather than an
overdraft.
"""

from dataclasses import dataclass

from .errors import InsufficientCreditError


@dataclass(frozen=True)
class CreditCheck:
    """Balance snapshot that a metered call was approved against."""
    balance_cents: int
    estimated_cents: int

    @property
    def headroom_cents(self) -> int:
        return self.balance_cents - self.estimated_cents


def enforce_credit_limit(balance_cents: int, estimated_cents: int) -> CreditCheck:
    """Approve a call whose estimate fits the balance.

    Args:
        balance_cents: Balance read from the ledger
        estimated_cents: Pre-flight estimate of the charge

    Returns:
        CreditCheck to carry into the debit step

    Raises:
        InsufficientCreditError: If the estimate exceeds the balance
    """
    if estimated_cents > balance_cents:
        raise InsufficientCreditError(
            balance_cents=balance_cents,
            requested_cents=estimated_cents,
        )
    return CreditCheck(balance_cents=balance_cents, estimated_cents=estimated_cents)


def clamp_debit(actual_cents: int, check: CreditCheck) -> int:
    """Limit the final charge to the balance confirmed before the call."""
    return max(0, min(actual_cents, check.balance_cents))
