"""
OpenRouter adapter.

OpenRouter exposes an OpenAI-compatible chat completions API, so requests go
through the OpenAI SDK pointed at the OpenRouter base URL. SDK-level retries
are disabled; the orchestrator owns the retry policy.
"""

import logging
from typing import Any, Dict, List, Optional

from openai import APIConnectionError, APIStatusError, OpenAI

from ..core.classifier import BibRecord, DeterministicResult
from ..core.criteria import CriteriaText
from ..core.errors import ProviderNetworkError, ProviderParseError
from ..core.pricing import OPENROUTER_MODELS, ModelConfig
from ..core.token_counter import usage_from_counts
from .base import (
    DEFAULT_TIMEOUT_SECONDS,
    ParsedDecision,
    ProviderAdapter,
    ProviderRequest,
    RawResponse,
    decision_from_json,
    normalize_effort,
    parse_llm_json,
)
from .prompts import SYSTEM_PROMPT, build_user_prompt, render_user_prompt


logger = logging.getLogger(__name__)

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

DEFAULT_HEADERS = {
    "HTTP-Referer": "https://literature-screening.local/",
    "X-Title": "Literature Screening Assistant",
}


class OpenRouterAdapter(ProviderAdapter):
    """Structured-reasoning provider: chat completions with an optional reasoning block."""

    name = "openrouter"
    models = OPENROUTER_MODELS

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        data_policy: Optional[str] = None,
        **kwargs: Any
    ):
        super().__init__(timeout_seconds=timeout_seconds, **kwargs)
        self.data_policy = data_policy

    def build_request(
        self,
        record: BibRecord,
        criteria_text: CriteriaText,
        anchor: DeterministicResult,
        effort: str,
        model: ModelConfig,
        simplified: bool = False,
    ) -> ProviderRequest:
        user_prompt = render_user_prompt(
            build_user_prompt(record, criteria_text, anchor, model.prompt_character_limit)
        )
        messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": user_prompt},
        ]
        payload: Dict[str, Any] = {
            "model": model.id,
            "messages": messages,
            "max_tokens": model.max_tokens,
            "temperature": 0,
        }

        effective_effort = normalize_effort(effort, model)
        if effective_effort != "none":
            payload["reasoning"] = {"enabled": True, "effort": effective_effort}

        return ProviderRequest(
            model_id=model.id,
            payload=payload,
            prompt_characters=sum(len(message["content"]) for message in messages),
            max_tokens=model.max_tokens,
            reasoning_enabled="reasoning" in payload,
            simplified=simplified,
        )

    def execute(self, request: ProviderRequest, credential: str) -> RawResponse:
        client = OpenAI(
            api_key=credential,
            base_url=OPENROUTER_BASE_URL,
            max_retries=0,
            timeout=self.timeout_seconds,
        )

        params = dict(request.payload)
        reasoning = params.pop("reasoning", None)
        headers = dict(DEFAULT_HEADERS)
        if self.data_policy:
            headers["X-OpenRouter-Data-Policy"] = self.data_policy

        try:
            completion = client.chat.completions.create(
                extra_headers=headers,
                extra_body={"reasoning": reasoning} if reasoning else None,
                **params
            )
        except APIStatusError as e:
            return RawResponse(status_code=e.status_code, text=_error_body(e))
        except APIConnectionError as e:
            raise ProviderNetworkError(f"Connection failed: {e}") from e

        return RawResponse(status_code=200, body=completion.model_dump())

    def parse_decision(self, raw: RawResponse) -> ParsedDecision:
        body = raw.body if isinstance(raw.body, dict) else {}
        content = extract_content(body)
        if not content:
            raise ProviderParseError("Response missing content.")

        parsed = parse_llm_json(content)
        if parsed is None:
            raise ProviderParseError("Failed to parse JSON response.")

        usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
        reported = usage_from_counts(usage.get("prompt_tokens"), usage.get("completion_tokens"))
        return decision_from_json(parsed, reported_usage=reported, raw_usage=usage)


def extract_content(body: Dict[str, Any]) -> Optional[str]:
    """Pull the assistant text out of a chat completion body.

    Content is either a plain string or a list of text segments.
    """
    choices = body.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0] if isinstance(choices[0], dict) else {}
    message = first.get("message") if isinstance(first.get("message"), dict) else {}
    content = message.get("content")

    if isinstance(content, str):
        return content.strip() or None
    if isinstance(content, list):
        return _join_segments(content) or None
    return None


def _join_segments(segments: List[Any]) -> str:
    texts = []
    for segment in segments:
        if isinstance(segment, str):
            texts.append(segment)
        elif isinstance(segment, dict) and isinstance(segment.get("text"), str):
            texts.append(segment["text"])
    return "".join(texts).strip()


def _error_body(error: APIStatusError) -> str:
    return error.response.text or str(error.message)
