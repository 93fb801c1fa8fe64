"""
Payment webhook ingestion.

Verifies ``t=<unix-seconds>,v1=<hex-hmac>`` signed events and turns completed
checkout sessions into ledger credits, at most once per event id.

Processing order for an actionable event is credit, then account-profile
merge, then idempotency marker. The three writes are not atomic: a crash after
the credit but before the marker lets a redelivery credit again.
"""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..core.errors import SignatureError
from ..storage.ledger import Ledger
from ..storage.models import WebhookEventRecord
from ..storage.repository import WebhookEventRepository


logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SIGNATURE_SCHEME = "v1"


@dataclass(frozen=True)
class WebhookEvent:
    """Verified event envelope."""
    id: str
    type: str
    data: Dict[str, Any] = field(default_factory=dict)

    @property
    def object(self) -> Dict[str, Any]:
        value = self.data.get("object")
        return value if isinstance(value, dict) else {}


@dataclass(frozen=True)
class WebhookAck:
    """Generic acknowledgment plus what happened, for logs and tests only."""
    event_id: str
    processed: bool
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"received": True}


def compute_signature(payload: str, timestamp: str, secret: str) -> str:
    """Hex HMAC-SHA256 of ``"{timestamp}.{payload}"``."""
    message = f"{timestamp}.{payload}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(payload: str, header: Optional[str], secret: str) -> WebhookEvent:
    """Check the signature header and parse the event envelope.

    Any ``v1`` entry matching the expected HMAC is accepted; comparison is
    constant-time.

    Args:
        payload: Raw request body, exactly as received
        header: Signature header value
        secret: Shared webhook secret

    Returns:
        Parsed WebhookEvent

    Raises:
        SignatureError: Missing or malformed header, no matching signature,
            or an envelope without ``id`` and ``type``
    """
    if not header:
        raise SignatureError("Missing signature header.")
    if not secret:
        raise SignatureError("Webhook secret is not configured.")

    timestamp = None
    provided: List[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == SIGNATURE_SCHEME:
            provided.append(value)

    if not timestamp or not provided:
        raise SignatureError("Signature header missing timestamp or signature.")

    expected = compute_signature(payload, timestamp, secret)
    if not any(hmac.compare_digest(candidate.lower(), expected) for candidate in provided):
        raise SignatureError("Signature verification failed.")

    try:
        envelope = json.loads(payload)
    except ValueError as exc:
        raise SignatureError("Webhook payload is not valid JSON.") from exc

    if not isinstance(envelope, dict) or not envelope.get("id") or not envelope.get("type"):
        raise SignatureError("Webhook payload missing id or type.")

    data = envelope.get("data")
    return WebhookEvent(
        id=str(envelope["id"]),
        type=str(envelope["type"]),
        data=data if isinstance(data, dict) else {},
    )


def _non_empty(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def _normalize_status(value: Any) -> Optional[str]:
    text = _non_empty(value)
    return text.strip().lower() if text else None


def _id_or_string(value: Any) -> Optional[str]:
    if isinstance(value, Mapping):
        return _non_empty(value.get("id"))
    return _non_empty(value)


def checkout_amount(session: Mapping[str, Any]) -> int:
    amount = session.get("amount_total")
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        return 0
    return max(0, int(amount))


def checkout_caller_id(session: Mapping[str, Any]) -> Optional[str]:
    metadata = session.get("metadata")
    if isinstance(metadata, Mapping):
        caller_id = _non_empty(metadata.get("userId"))
        if caller_id:
            return caller_id
    return _non_empty(session.get("client_reference_id"))


def checkout_customer_email(session: Mapping[str, Any]) -> Optional[str]:
    details = session.get("customer_details")
    if isinstance(details, Mapping):
        email = _non_empty(details.get("email"))
        if email:
            return email
    return _non_empty(session.get("customer_email"))


class WebhookIngester:
    """Applies verified checkout events to the ledger."""

    def __init__(self, ledger: Ledger, events: WebhookEventRepository, currency: str = "usd"):
        """Initialize the ingester.

        Args:
            ledger: Ledger to credit
            events: Idempotency marker store
            currency: Only sessions in this currency are credited
        """
        self.ledger = ledger
        self.events = events
        self.currency = currency.lower()

    def ingest(self, payload: str, header: Optional[str], secret: str) -> WebhookAck:
        """Verify and process one delivery.

        Raises:
            SignatureError: If verification fails; nothing is processed
        """
        event = verify_signature(payload, header, secret)

        if event.type != CHECKOUT_COMPLETED:
            return WebhookAck(event_id=event.id, processed=False, reason="ignored event type")

        try:
            return self._apply_checkout(event)
        except Exception:
            # The sender cannot fix internal failures; acknowledge and keep the trace
            logger.exception("Failed to record checkout session for event %s", event.id)
            return WebhookAck(event_id=event.id, processed=False, reason="internal error")

    def _apply_checkout(self, event: WebhookEvent) -> WebhookAck:
        session = event.object
        session_id = _non_empty(session.get("id"))
        amount_total = checkout_amount(session)
        caller_id = checkout_caller_id(session)
        currency = _normalize_status(session.get("currency"))
        payment_status = _normalize_status(session.get("payment_status"))
        checkout_status = _normalize_status(session.get("status"))

        rejection = None
        if not caller_id:
            rejection = "missing caller id"
        elif amount_total <= 0:
            rejection = "amount_total missing or zero"
        elif payment_status and payment_status != "paid":
            rejection = f"payment status {payment_status}"
        elif checkout_status and checkout_status != "complete":
            rejection = f"checkout status {checkout_status}"
        elif currency and currency != self.currency:
            rejection = f"currency {currency}"

        if rejection:
            logger.warning("Ignoring checkout session %s: %s", session_id, rejection)
            return WebhookAck(event_id=event.id, processed=False, reason=rejection)

        if self.events.is_processed(event.id):
            logger.info("Webhook event %s already processed", event.id)
            return WebhookAck(event_id=event.id, processed=False, reason="duplicate")

        customer_id = _id_or_string(session.get("customer"))
        customer_email = checkout_customer_email(session)

        self.ledger.credit(
            caller_id,
            amount_total,
            metadata={
                "eventId": event.id,
                "sessionId": session_id,
                "customerId": customer_id,
                "paymentIntentId": _id_or_string(session.get("payment_intent")),
                "amountTotalCents": amount_total,
                "currency": session.get("currency"),
                "paymentStatus": session.get("payment_status"),
                "checkoutStatus": session.get("status"),
            },
        )
        self.ledger.merge_account_profile(caller_id, customer_id=customer_id, customer_email=customer_email)
        self.events.insert(WebhookEventRecord(
            event_id=event.id,
            event_type=event.type,
            processed_at=datetime.now(timezone.utc),
            session_id=session_id,
            caller_id=caller_id,
            amount_total=amount_total,
            currency=session.get("currency"),
        ))
        return WebhookAck(event_id=event.id, processed=True)
