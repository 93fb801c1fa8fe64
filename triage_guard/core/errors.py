"""
Error taxonomy.

Every failure the HTTP surface distinguishes has its own exception class so
callers can map it to a status code without inspecting messages.
"""

from typing import Optional


class TriageGuardError(Exception):
    """Base class for all domain errors."""


class ValidationError(TriageGuardError):
    """Malformed request. Never retried."""


class AuthError(TriageGuardError):
    """Caller identity missing or unresolvable."""


class InsufficientCreditError(TriageGuardError):
    """Raised when a ledger balance cannot cover a charge.

    Carries the balance observed at the time of the check so the caller can be
    prompted to top up.
    """

    def __init__(
        self,
        message: str = "Insufficient managed credits.",
        balance_cents: int = 0,
        requested_cents: int = 0,
    ):
        super().__init__(message)
        self.balance_cents = balance_cents
        self.requested_cents = requested_cents


class CreditExhaustedError(InsufficientCreditError):
    """Balance moved between the pre-flight check and the final debit."""


class ProviderError(TriageGuardError):
    """A provider call did not produce a usable decision."""


class ProviderNetworkError(ProviderError):
    """Transport-level failure (connection, timeout, TLS)."""


class ProviderParseError(ProviderError):
    """Provider answered but the decision could not be extracted."""


class SignatureError(TriageGuardError):
    """Webhook signature or envelope failed verification."""

    def __init__(self, message: str, event_id: Optional[str] = None):
        super().__init__(message)
        self.event_id = event_id
