"""
Triage orchestration.

Runs one record through the pipeline:

1. Deterministic anchor (always)
2. Metered pre-flight: identity, estimate, balance check
3. Bounded provider attempts
4. Overlay of the model's verdict on the anchor's matches
5. Reconciliation and debit for metered calls
6. Deterministic fallback with the failure embedded in the rationale
7. Best-effort run-history entry
"""

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from ..providers.base import ParsedDecision, ProviderAdapter
from ..storage.ledger import Ledger
from ..storage.models import CostSummary, TriageRunRecord
from ..storage.repository import RunRepository
from .classifier import (
    BibRecord,
    DecisionSource,
    DeterministicResult,
    TriageDecision,
    build_decision,
    classify,
)
from .criteria import CriteriaText, ScreeningCriteria, build_criteria, criteria_to_dict
from .errors import (
    AuthError,
    CreditExhaustedError,
    InsufficientCreditError,
    ProviderError,
    TriageGuardError,
    ValidationError,
)
from .estimator import ESTIMATE_BUFFER_MULTIPLIER, CostEstimate, estimate_cost, reconcile_actual_cents
from .guardrails import CreditCheck, clamp_debit, enforce_credit_limit
from .retry import MAX_ATTEMPTS, AttemptOutcome, run_attempts
from .token_counter import TokenUsage


logger = logging.getLogger(__name__)

DETERMINISTIC_PROVIDER = "deterministic"
DEFAULT_CURRENCY = "usd"


class UsageMode(Enum):
    """Who pays for the provider call."""
    BYOK = "byok"
    METERED = "metered"

    @classmethod
    def parse(cls, value: Optional[str]) -> "UsageMode":
        """Read a mode name; ``managed`` is accepted for metered.

        Raises:
            ValidationError: If the mode is unknown
        """
        normalized = (value or cls.BYOK.value).strip().lower()
        if normalized == "managed":
            return cls.METERED
        for mode in cls:
            if mode.value == normalized:
                return mode
        raise ValidationError(f"Unknown usage mode: {value}")


@dataclass(frozen=True)
class TriageRequest:
    """One record to triage plus how to pay for it."""
    record: BibRecord
    criteria_text: CriteriaText
    provider: str = DETERMINISTIC_PROVIDER
    mode: UsageMode = UsageMode.BYOK
    heuristics: Optional[ScreeningCriteria] = None
    reasoning_effort: Optional[str] = None
    model_id: Optional[str] = None
    caller_id: Optional[str] = None
    api_key: Optional[str] = None


@dataclass(frozen=True)
class TriageOutcome:
    """Decision returned to the caller."""
    decision: TriageDecision
    warning: Optional[str] = None
    usage: Optional[TokenUsage] = None
    cost: Optional[CostSummary] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"decision": self.decision.to_dict()}
        if self.warning:
            data["warning"] = self.warning
        if self.usage is not None:
            data["usage"] = self.usage.to_dict()
        if self.cost is not None:
            data["cost"] = self.cost.to_dict()
        return data


def overlay_decision(
    record: BibRecord,
    anchor: DeterministicResult,
    parsed: ParsedDecision,
    model_label: str,
) -> TriageDecision:
    """Apply a model verdict on top of the deterministic anchor.

    Rule matches always come from the anchor. Missing or unrecognized model
    fields keep the anchor's values.
    """
    return TriageDecision(
        record_key=record.key,
        status=parsed.status or anchor.status,
        confidence=parsed.confidence if parsed.confidence is not None else anchor.confidence,
        inclusion_matches=anchor.inclusion_matches,
        exclusion_matches=anchor.exclusion_matches,
        rationale=parsed.rationale,
        model_label=model_label,
        source=DecisionSource.LLM,
        record_type=record.type,
        title=record.get("title"),
        year=record.get("year"),
    )


def fallback_rationale(warning: str) -> str:
    return f"Deterministic heuristics applied because the model call failed. {warning}"


class TriageOrchestrator:
    """Coordinates classification, provider calls and metering.

    All collaborators are injected; nothing here holds state across runs.
    """

    def __init__(
        self,
        ledger: Ledger,
        adapters: Mapping[str, ProviderAdapter],
        runs: Optional[RunRepository] = None,
        credentials: Optional[Mapping[str, str]] = None,
        currency: str = DEFAULT_CURRENCY,
        max_attempts: int = MAX_ATTEMPTS,
        buffer_multiplier: Decimal = ESTIMATE_BUFFER_MULTIPLIER,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the orchestrator.

        Args:
            ledger: Ledger used for metered calls
            adapters: Provider adapters keyed by provider name
            runs: Run-history store; history is not kept when None
            credentials: Managed provider keys keyed by provider name
            currency: Accounting currency reported in cost summaries
            max_attempts: Upper bound on provider attempts per record
            buffer_multiplier: Safety margin on cost estimates
            sleep: Backoff primitive, injectable for tests
        """
        self.ledger = ledger
        self.adapters = dict(adapters)
        self.runs = runs
        self.credentials = dict(credentials or {})
        self.currency = currency
        self.max_attempts = max_attempts
        self.buffer_multiplier = Decimal(buffer_multiplier)
        self.sleep = sleep

    def run(self, request: TriageRequest) -> TriageOutcome:
        """Triage a single record.

        Provider failures never propagate; they degrade to the deterministic
        decision with a warning.

        Args:
            request: Record, criteria and payment details

        Returns:
            TriageOutcome with the final decision

        Raises:
            ValidationError: Unknown provider or missing caller key
            AuthError: Metered call without a caller identity
            InsufficientCreditError: Estimate exceeds the balance (no call made)
            CreditExhaustedError: Balance moved before the debit; the run is recorded first
        """
        record = request.record
        criteria = request.heuristics or build_criteria(request.criteria_text)
        anchor = classify(record, criteria)

        if request.mode == UsageMode.METERED and not request.caller_id:
            raise AuthError("Sign in required to use managed credits.")

        if request.provider == DETERMINISTIC_PROVIDER:
            outcome = TriageOutcome(decision=build_decision(record, anchor))
            self._record_run(request, criteria, outcome)
            return outcome

        adapter = self._adapter_for(request.provider)
        model = adapter.resolve_model(request.model_id)
        model_label = adapter.model_label(model)
        metered = request.mode == UsageMode.METERED
        credential = self._credential_for(request, adapter, metered)

        estimate: Optional[CostEstimate] = None
        check: Optional[CreditCheck] = None
        if metered:
            preview = adapter.build_request(
                record, request.criteria_text, anchor, request.reasoning_effort, model
            )
            estimate = estimate_cost(preview, model, self.buffer_multiplier)
            if self.ledger.is_active:
                balance = self.ledger.balance(request.caller_id).balance_cents
                check = enforce_credit_limit(balance, estimate.estimated_cents)

        def attempt(number: int, previous: Optional[AttemptOutcome]) -> AttemptOutcome:
            provider_request = adapter.build_request(
                record,
                request.criteria_text,
                anchor,
                request.reasoning_effort,
                model,
                simplified=adapter.should_simplify(previous),
            )
            try:
                raw = adapter.execute(provider_request, credential)
                if not raw.ok:
                    return adapter.classify_http_failure(raw.status_code, raw.text, attempt=number).to_outcome()
                return AttemptOutcome.success(adapter.parse_decision(raw))
            except ProviderError as exc:
                return AttemptOutcome.retryable(str(exc))
            except Exception as exc:
                # Malformed provider payloads must degrade to the anchor, never escape
                logger.exception("Unexpected error from %s on attempt %d", adapter.name, number)
                return AttemptOutcome.retryable(f"Unexpected provider error: {exc}")

        outcome, attempts = run_attempts(attempt, self.max_attempts, self.sleep)

        if not outcome.succeeded:
            warning = (
                f"{model_label}: {outcome.reason}"
                if outcome.reason
                else f"{model_label}: request failed without details."
            )
            logger.warning("Provider %s gave up after %d attempt(s): %s", adapter.name, attempts, warning)
            cost = None
            if estimate is not None:
                balance_cents = check.balance_cents if check is not None else None
                cost = CostSummary(
                    currency=self.currency,
                    estimated_cents=estimate.estimated_cents,
                    actual_cents=0,
                    balance_before_cents=balance_cents,
                    balance_after_cents=balance_cents,
                )
            result = TriageOutcome(
                decision=build_decision(record, anchor, rationale=fallback_rationale(warning)),
                warning=warning,
                cost=cost,
            )
            self._record_run(request, criteria, result)
            return result

        parsed: ParsedDecision = outcome.value
        decision = overlay_decision(record, anchor, parsed, model_label)
        usage = parsed.reported_usage

        if estimate is None:
            result = TriageOutcome(decision=decision, usage=usage)
            self._record_run(request, criteria, result)
            return result

        actual_cents = reconcile_actual_cents(parsed.raw_usage, usage, model, estimate)
        if check is None:
            # Offline ledger: cost is reported but never charged
            result = TriageOutcome(
                decision=decision,
                usage=usage,
                cost=CostSummary(
                    currency=self.currency,
                    estimated_cents=estimate.estimated_cents,
                    actual_cents=actual_cents,
                ),
            )
            self._record_run(request, criteria, result)
            return result

        charge_cents = clamp_debit(actual_cents, check)
        try:
            debit = self.ledger.debit(
                request.caller_id,
                charge_cents,
                metadata={
                    "provider": adapter.name,
                    "model": model.id,
                    "recordKey": record.key,
                    "estimatedCostCents": estimate.estimated_cents,
                    "actualCostCents": actual_cents,
                    "attempts": attempts,
                },
            )
        except InsufficientCreditError as exc:
            warning = "Managed credits were exhausted while finalizing this run."
            result = TriageOutcome(
                decision=decision,
                warning=warning,
                usage=usage,
                cost=CostSummary(
                    currency=self.currency,
                    estimated_cents=estimate.estimated_cents,
                    actual_cents=charge_cents,
                    balance_before_cents=exc.balance_cents,
                    balance_after_cents=exc.balance_cents,
                ),
            )
            self._record_run(request, criteria, result)
            raise CreditExhaustedError(
                warning,
                balance_cents=exc.balance_cents,
                requested_cents=charge_cents,
            ) from exc

        result = TriageOutcome(
            decision=decision,
            usage=usage,
            cost=CostSummary(
                currency=self.currency,
                estimated_cents=estimate.estimated_cents,
                actual_cents=charge_cents,
                balance_before_cents=debit.previous_balance_cents,
                balance_after_cents=debit.new_balance_cents,
            ),
        )
        self._record_run(request, criteria, result)
        return result

    def _adapter_for(self, provider: str) -> ProviderAdapter:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ValidationError(f"Unsupported provider: {provider}")
        return adapter

    def _credential_for(self, request: TriageRequest, adapter: ProviderAdapter, metered: bool) -> str:
        if not metered:
            if not request.api_key:
                raise ValidationError(f"An API key is required to call {adapter.models.provider_label}.")
            return request.api_key

        credential = self.credentials.get(adapter.name)
        if not credential:
            raise TriageGuardError(f"Managed {adapter.models.provider_label} credentials are not configured.")
        return credential

    def _record_run(self, request: TriageRequest, criteria: ScreeningCriteria, outcome: TriageOutcome) -> None:
        if self.runs is None:
            return
        run = TriageRunRecord(
            id=uuid.uuid4().hex,
            caller_id=request.caller_id,
            provider=request.provider,
            usage_mode=request.mode.value,
            decision=outcome.decision.to_dict(),
            heuristics=criteria_to_dict(criteria),
            token_usage=outcome.usage.to_dict() if outcome.usage else None,
            cost=outcome.cost.to_dict() if outcome.cost else None,
            warning=outcome.warning,
            timestamp=datetime.now(timezone.utc),
        )
        try:
            self.runs.insert_run(run)
        except Exception:
            # History is an audit aid; the decision is returned regardless
            logger.exception("Failed to record triage run for %s", request.record.key)
