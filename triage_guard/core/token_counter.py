"""
Token counting and usage tracking.

Token figures either come from a provider's usage report or from the
character-based projection used before a call is made.
"""

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional


# Average characters per token used for pre-flight projections
CHARS_PER_TOKEN = 3.8

MIN_PROMPT_TOKENS = 400
MIN_COMPLETION_TOKENS = 512

COMPLETION_RATIO = 0.5
REASONING_COMPLETION_RATIO = 0.65


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    def to_dict(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }


def project_prompt_tokens(prompt_characters: int) -> int:
    """Project prompt tokens from the prompt's character count."""
    return max(MIN_PROMPT_TOKENS, math.ceil(prompt_characters / CHARS_PER_TOKEN))


def project_completion_tokens(max_tokens: int, reasoning_enabled: bool) -> int:
    """Project completion tokens from the requested output ceiling.

    Reasoning models spend a larger share of the ceiling before answering.
    """
    ratio = REASONING_COMPLETION_RATIO if reasoning_enabled else COMPLETION_RATIO
    # int(x + 0.5) rounds half up for non-negative values
    projected = int(max_tokens * ratio + 0.5)
    return max(MIN_COMPLETION_TOKENS, min(max_tokens, projected))


def usage_from_counts(prompt: Any, completion: Any) -> Optional[TokenUsage]:
    """Build TokenUsage from provider-reported counts.

    Returns None unless both counts are non-negative numbers.
    """
    if not _is_count(prompt) or not _is_count(completion):
        return None
    return TokenUsage(prompt_tokens=int(prompt), completion_tokens=int(completion))


def _is_count(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value >= 0
