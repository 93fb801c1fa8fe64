"""
Provider adapter contract and shared response handling.

An adapter turns a record plus its deterministic anchor into a provider
request, executes it, and extracts decision fields from the response. The
orchestrator owns retries, costing and fallback; adapters only classify.
"""

import json
import logging
import math
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from ..core.classifier import BibRecord, DeterministicResult, TriageStatus
from ..core.criteria import CriteriaText
from ..core.pricing import ModelConfig, ModelRegistry
from ..core.retry import AttemptOutcome, RATE_LIMIT_BACKOFF_SECONDS
from ..core.token_counter import TokenUsage


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0

REASONING_EFFORTS = ("none", "minimal", "low", "medium", "high")
DEFAULT_REASONING_EFFORT = "low"

MAX_ERROR_DETAIL_CHARS = 300

_CODE_FENCE_PATTERN = re.compile(r"```(?:json)?", re.IGNORECASE)
_JSON_BLOCK_PATTERN = re.compile(r"\{.*\}", re.DOTALL)


@dataclass(frozen=True)
class ProviderRequest:
    """Provider-specific payload plus the figures the cost estimator needs."""
    model_id: str
    payload: Dict[str, Any]
    prompt_characters: int
    max_tokens: int
    reasoning_enabled: bool = False
    simplified: bool = False


@dataclass(frozen=True)
class RawResponse:
    """HTTP-level answer from a provider."""
    status_code: int
    body: Optional[Any] = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(frozen=True)
class ParsedDecision:
    """Decision fields extracted from a provider answer.

    Absent fields defer to the deterministic anchor.
    """
    status: Optional[TriageStatus] = None
    confidence: Optional[float] = None
    rationale: Optional[str] = None
    reported_usage: Optional[TokenUsage] = None
    raw_usage: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class HttpFailure:
    """Classification of a non-2xx provider response."""
    fatal: bool
    message: str
    backoff_seconds: float = 0.0
    bad_request: bool = False

    def to_outcome(self) -> AttemptOutcome:
        if self.fatal:
            return AttemptOutcome.fatal(self.message)
        return AttemptOutcome.retryable(
            self.message,
            backoff_seconds=self.backoff_seconds,
            bad_request=self.bad_request,
        )


class ProviderAdapter(ABC):
    """Capability shared by every LLM provider variant."""

    name: str = ""
    models: ModelRegistry

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        rate_limit_backoff_seconds: float = RATE_LIMIT_BACKOFF_SECONDS,
    ):
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.timeout_seconds = timeout_seconds
        self.rate_limit_backoff_seconds = rate_limit_backoff_seconds

    def resolve_model(self, model_id: Optional[str]) -> ModelConfig:
        return self.models.resolve(model_id)

    def model_label(self, model: ModelConfig) -> str:
        return self.models.label_for(model)

    @abstractmethod
    def build_request(
        self,
        record: BibRecord,
        criteria_text: CriteriaText,
        anchor: DeterministicResult,
        effort: str,
        model: ModelConfig,
        simplified: bool = False,
    ) -> ProviderRequest:
        """Build the provider payload for one record."""

    @abstractmethod
    def execute(self, request: ProviderRequest, credential: str) -> RawResponse:
        """Send the request.

        Raises:
            ProviderNetworkError: On transport failure
        """

    @abstractmethod
    def parse_decision(self, raw: RawResponse) -> ParsedDecision:
        """Extract decision fields from a successful response.

        Raises:
            ProviderParseError: If no decision can be extracted
        """

    def classify_http_failure(self, status_code: int, body: str, attempt: int = 1) -> HttpFailure:
        """Decide whether a non-2xx response is worth retrying.

        5xx and 429 are retryable; any other 4xx aborts the attempt loop.
        """
        message = format_http_error(status_code, body)
        if status_code == 429 or status_code >= 500:
            return HttpFailure(fatal=False, message=message)
        return HttpFailure(fatal=True, message=message)

    def should_simplify(self, previous: Optional[AttemptOutcome]) -> bool:
        """Whether the next attempt should use a reduced payload."""
        return False


def normalize_effort(effort: Optional[str], model: ModelConfig) -> str:
    """Clamp a requested reasoning effort to what the model supports."""
    if not model.supports_reasoning:
        return "none"
    if effort in REASONING_EFFORTS:
        return effort
    return DEFAULT_REASONING_EFFORT


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE_PATTERN.sub("", text).strip()


def parse_llm_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse model output as a JSON object.

    Falls back to the first ``{...}`` block when the whole text is not JSON.
    """
    if not text:
        return None
    cleaned = strip_code_fences(text)

    candidates = [cleaned]
    block = _JSON_BLOCK_PATTERN.search(cleaned)
    if block:
        candidates.append(block.group(0))

    for candidate in candidates:
        try:
            value = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(value, dict):
            return value
    return None


def decision_from_json(
    data: Mapping[str, Any],
    reported_usage: Optional[TokenUsage] = None,
    raw_usage: Optional[Mapping[str, Any]] = None,
) -> ParsedDecision:
    """Read status, confidence and rationale from a parsed model answer."""
    rationale = data.get("rationale")
    if not isinstance(rationale, str) or not rationale.strip():
        rationale = None

    return ParsedDecision(
        status=TriageStatus.parse(data.get("status")),
        confidence=_parse_confidence(data.get("confidence")),
        rationale=rationale.strip() if rationale else None,
        reported_usage=reported_usage,
        raw_usage=dict(raw_usage or {}),
    )


def format_http_error(status_code: int, body: str) -> str:
    """Human-readable message for a failed provider call.

    The provider is not named; the orchestrator prefixes the model label.
    """
    detail = _extract_error_detail(body)
    if detail:
        return f"Request failed ({status_code}): {detail}"
    return f"Request failed ({status_code})."


def _extract_error_detail(body: str) -> str:
    if not body:
        return ""
    try:
        parsed = json.loads(body)
    except ValueError:
        return body.strip()[:MAX_ERROR_DETAIL_CHARS]

    error = parsed.get("error") if isinstance(parsed, dict) else None
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"][:MAX_ERROR_DETAIL_CHARS]
    if isinstance(error, str):
        return error[:MAX_ERROR_DETAIL_CHARS]
    if isinstance(parsed, dict) and isinstance(parsed.get("message"), str):
        return parsed["message"][:MAX_ERROR_DETAIL_CHARS]
    return body.strip()[:MAX_ERROR_DETAIL_CHARS]


def _parse_confidence(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)):
        return None
    if math.isnan(value):
        return None
    return min(max(float(value), 0.0), 1.0)
