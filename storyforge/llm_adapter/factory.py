"""
Provider factory -- builds provider clients by name.

Supported providers:

  mock        Built-in deterministic mock, no API key needed (default)
  openai      OpenAI API  -- needs OPENAI_API_KEY or LLM_API_KEY
  groq        Groq API    -- needs GROQ_API_KEY or LLM_API_KEY
  gemini      Google AI   -- needs GEMINI_API_KEY or LLM_API_KEY
  openrouter  OpenRouter  -- needs OPENROUTER_API_KEY or LLM_API_KEY
  local       Any OpenAI-compatible local server (no key required)

The set is closed: the router selects among these by explicit
priority and health data, never by reflection.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from storyforge.llm_adapter.base import LLMProvider
from storyforge.llm_adapter.mock_provider import MockProvider

logger = logging.getLogger(__name__)

_OPENAI_COMPATIBLE = {"openai", "groq", "gemini", "openrouter", "local"}


def _openai_compatible(name: str) -> Callable[[], LLMProvider]:
    """Lazy import so the mock-only setup does not load the openai client."""

    def _factory() -> LLMProvider:
        from storyforge.llm_adapter.openai_provider import OpenAIProvider

        return OpenAIProvider(provider_name=name)

    return _factory


def build_provider(name: str) -> LLMProvider:
    """Return a fresh provider client for the given backend name.

    Names may carry a suffix after ``#`` to run several mock instances
    side by side (``mock#backup``).
    """
    base, _, _ = name.lower().partition("#")

    if base == "mock":
        return MockProvider(name=name.lower())
    if base in _OPENAI_COMPATIBLE:
        return _openai_compatible(base)()

    raise ValueError(
        f"Unknown LLM provider '{name}'. "
        f"Available: mock, openai, groq, gemini, openrouter, local"
    )


def build_providers(names: list[str]) -> dict[str, LLMProvider]:
    providers: dict[str, LLMProvider] = {}
    for name in names:
        key = name.strip().lower()
        if not key or key in providers:
            continue
        providers[key] = build_provider(key)
    if not providers:
        raise ValueError("At least one generation provider must be configured")
    logger.info("Generation providers initialized: %s", ", ".join(providers))
    return providers
