"""
Data models for storage layer.

Defines ledger, webhook and run-history entities.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class TransactionType(Enum):
    """Direction of a ledger movement."""
    TOPUP = "topup"
    DEBIT = "debit"


@dataclass(frozen=True)
class LedgerAccount:
    """Per-caller balance accumulator plus payment-provider profile."""
    caller_id: str
    balance_cents: int
    updated_at: Optional[datetime]
    customer_id: Optional[str] = None
    customer_email: Optional[str] = None


@dataclass(frozen=True)
class LedgerTransaction:
    """Immutable ledger entry.

    Append-only records that form the audit trail of an account.
    Once written, these records must never be modified.
    """
    id: str
    caller_id: str
    type: TransactionType
    amount_cents: int
    balance_after_cents: int
    created_at: datetime
    metadata: Optional[Dict[str, Any]] = None

    @property
    def signed_amount_cents(self) -> int:
        if self.type == TransactionType.DEBIT:
            return -self.amount_cents
        return self.amount_cents


@dataclass(frozen=True)
class WebhookEventRecord:
    """Idempotency marker for a processed payment event."""
    event_id: str
    event_type: str
    processed_at: datetime
    session_id: Optional[str]
    caller_id: Optional[str]
    amount_total: Optional[int]
    currency: Optional[str]


@dataclass(frozen=True)
class CostSummary:
    """Cost figures attached to a metered run for audit.

    Balances are None when the ledger runs offline.
    """
    currency: str
    estimated_cents: int
    actual_cents: int
    balance_before_cents: Optional[int] = None
    balance_after_cents: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currency": self.currency,
            "estimatedCents": self.estimated_cents,
            "actualCents": self.actual_cents,
            "balanceBeforeCents": self.balance_before_cents,
            "balanceAfterCents": self.balance_after_cents,
        }


@dataclass(frozen=True)
class TriageRunRecord:
    """One run-history entry: a single record triaged once."""
    id: str
    caller_id: Optional[str]
    provider: str
    usage_mode: str
    decision: Dict[str, Any]
    timestamp: datetime
    heuristics: Optional[Dict[str, Any]] = None
    token_usage: Optional[Dict[str, Any]] = None
    cost: Optional[Dict[str, Any]] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.caller_id,
            "provider": self.provider,
            "usageMode": self.usage_mode,
            "heuristics": self.heuristics,
            "decision": self.decision,
            "tokenUsage": self.token_usage,
            "cost": self.cost,
            "warning": self.warning,
            "timestamp": self.timestamp.isoformat(),
        }
