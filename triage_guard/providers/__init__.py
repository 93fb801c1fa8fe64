"""
LLM provider adapters for Triage Guard.

Each adapter builds provider-specific requests and parses responses into
decision fields; retries and costing live in the orchestrator.
"""

from .base import ProviderAdapter, ProviderRequest, RawResponse, ParsedDecision, HttpFailure
from .gemini import GeminiAdapter
from .openrouter import OpenRouterAdapter

__all__ = [
    "ProviderAdapter",
    "ProviderRequest",
    "RawResponse",
    "ParsedDecision",
    "HttpFailure",
    "GeminiAdapter",
    "OpenRouterAdapter",
]
