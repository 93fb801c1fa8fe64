"""
Gemini adapter.

Calls the Generative Language ``generateContent`` REST endpoint directly.
After a bad-request failure the next attempt sends a reduced payload without
system instruction, JSON response mode or thinking budget.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from ..core.classifier import BibRecord, DeterministicResult
from ..core.criteria import CriteriaText
from ..core.errors import ProviderNetworkError, ProviderParseError
from ..core.pricing import GEMINI_MODELS, ModelConfig
from ..core.retry import AttemptOutcome
from ..core.token_counter import usage_from_counts
from .base import (
    HttpFailure,
    ParsedDecision,
    ProviderAdapter,
    ProviderRequest,
    RawResponse,
    decision_from_json,
    format_http_error,
    normalize_effort,
    parse_llm_json,
)
from .prompts import build_user_prompt, render_user_prompt


logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

GEMINI_SYSTEM_PROMPT = "You are a systematic review screening assistant. Respond with strict JSON only."

THINKING_BUDGET = 2048
SIMPLE_PROMPT_LIMIT = 2500
SIMPLE_MAX_OUTPUT_TOKENS = 1024


class GeminiAdapter(ProviderAdapter):
    """Generative provider: single-turn generateContent with JSON response mode."""

    name = "gemini"
    models = GEMINI_MODELS

    def build_request(
        self,
        record: BibRecord,
        criteria_text: CriteriaText,
        anchor: DeterministicResult,
        effort: str,
        model: ModelConfig,
        simplified: bool = False,
    ) -> ProviderRequest:
        limit = SIMPLE_PROMPT_LIMIT if simplified else model.prompt_character_limit
        max_tokens = SIMPLE_MAX_OUTPUT_TOKENS if simplified else model.max_tokens
        user_prompt = render_user_prompt(build_user_prompt(record, criteria_text, anchor, limit))

        payload: Dict[str, Any] = {
            "contents": [{"role": "user", "parts": [{"text": user_prompt}]}],
            "generationConfig": {"temperature": 0, "maxOutputTokens": max_tokens},
        }
        prompt_characters = len(user_prompt)
        thinking = False

        if not simplified:
            payload["systemInstruction"] = {"parts": [{"text": GEMINI_SYSTEM_PROMPT}]}
            payload["generationConfig"]["responseMimeType"] = "application/json"
            prompt_characters += len(GEMINI_SYSTEM_PROMPT)
            if normalize_effort(effort, model) != "none":
                payload["generationConfig"]["thinkingConfig"] = {
                    "thinkingBudget": min(THINKING_BUDGET, max_tokens),
                }
                thinking = True

        return ProviderRequest(
            model_id=model.id,
            payload=payload,
            prompt_characters=prompt_characters,
            max_tokens=max_tokens,
            reasoning_enabled=thinking,
            simplified=simplified,
        )

    def execute(self, request: ProviderRequest, credential: str) -> RawResponse:
        url = f"{GEMINI_API_BASE}/models/{request.model_id}:generateContent"
        headers = {"Content-Type": "application/json", "x-goog-api-key": credential}
        try:
            response = requests.post(
                url,
                headers=headers,
                json=request.payload,
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as e:
            raise ProviderNetworkError(f"Connection failed: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = None
        return RawResponse(status_code=response.status_code, body=body, text=response.text)

    def parse_decision(self, raw: RawResponse) -> ParsedDecision:
        body = raw.body if isinstance(raw.body, dict) else {}
        content = extract_candidate_text(body)
        if not content:
            feedback = body.get("promptFeedback") if isinstance(body.get("promptFeedback"), dict) else {}
            block_reason = feedback.get("blockReason")
            if block_reason:
                raise ProviderParseError(f"Response blocked: {block_reason}.")
            raise ProviderParseError("Response missing content.")

        parsed = parse_llm_json(content)
        if parsed is None:
            raise ProviderParseError("Failed to parse JSON response.")

        metadata = body.get("usageMetadata") if isinstance(body.get("usageMetadata"), dict) else {}
        completion = metadata.get("candidatesTokenCount")
        thoughts = metadata.get("thoughtsTokenCount")
        if isinstance(completion, int) and isinstance(thoughts, int):
            completion += thoughts
        reported = usage_from_counts(metadata.get("promptTokenCount"), completion)
        return decision_from_json(parsed, reported_usage=reported, raw_usage=metadata)

    def classify_http_failure(self, status_code: int, body: str, attempt: int = 1) -> HttpFailure:
        """Gemini rate-limits at 429 and rejects oversized payloads with 400.

        Both are retried: 429 after an attempt-scaled delay, 400 with the
        simplified payload.
        """
        message = format_http_error(status_code, body)
        if status_code == 429:
            return HttpFailure(
                fatal=False,
                message=message,
                backoff_seconds=self.rate_limit_backoff_seconds * attempt,
            )
        if status_code == 400:
            return HttpFailure(fatal=False, message=message, bad_request=True)
        return super().classify_http_failure(status_code, body, attempt)

    def should_simplify(self, previous: Optional[AttemptOutcome]) -> bool:
        return previous is not None and previous.bad_request


def extract_candidate_text(body: Dict[str, Any]) -> Optional[str]:
    """Join the text parts of the first candidate, skipping thought parts."""
    candidates = body.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    first = candidates[0] if isinstance(candidates[0], dict) else {}
    content = first.get("content") if isinstance(first.get("content"), dict) else {}
    parts = content.get("parts")
    if not isinstance(parts, list):
        return None
    return _join_parts(parts) or None


def _join_parts(parts: List[Any]) -> str:
    texts = [
        part["text"]
        for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str) and not part.get("thought")
    ]
    return "".join(texts).strip()
