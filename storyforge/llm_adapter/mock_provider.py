"""
Deterministic mock provider for testing and development.

Always returns the same story for the same prompt hash, making the entire
pipeline reproducible without network calls.
"""

from __future__ import annotations

import hashlib

from storyforge.llm_adapter.base import LLMProvider
from storyforge.llm_adapter.models import LLMRequest, LLMResponse

_MOCK_TITLE = "The Friendly Lighthouse"


class MockProvider(LLMProvider):

    def __init__(self, name: str = "mock") -> None:
        self.name = name
        self._call_count = 0

    @property
    def call_count(self) -> int:
        return self._call_count

    async def generate(self, request: LLMRequest) -> LLMResponse:
        self._call_count += 1
        prompt_hash = hashlib.sha256(request.prompt.encode()).hexdigest()

        content = (
            f"Title: {_MOCK_TITLE}\n\n"
            "Once upon a time a small lighthouse helped the boats find their way home. "
            "Every night it shone a warm light across the calm sea. "
            f"The sailors smiled and waved. Story {prompt_hash[:8]}."
        )

        fake_prompt_tokens = len(request.prompt.split())
        fake_completion_tokens = len(content.split())

        return LLMResponse(
            content=content,
            model="mock-deterministic",
            prompt_tokens=fake_prompt_tokens,
            completion_tokens=fake_completion_tokens,
            total_tokens=fake_prompt_tokens + fake_completion_tokens,
            prompt_hash=prompt_hash,
        )
