"""Abstract base class that all generation providers must implement."""

from __future__ import annotations

import time
from abc import ABC, abstractmethod

from storyforge.llm_adapter.models import LLMRequest, LLMResponse, ProviderHealth


class LLMProvider(ABC):
    """
    Contract for generation providers.

    Every implementation MUST:
    - Return a fully populated LLMResponse including token counts
    - Raise ProviderError with a classified ErrorKind on failure, never a
      bare transport exception
    """

    name: str = "provider"

    @abstractmethod
    async def generate(self, request: LLMRequest) -> LLMResponse:
        """Send a prompt and return the model's response."""

    async def health_check(self) -> ProviderHealth:
        """Probe the backend with a tiny request."""
        started = time.monotonic()
        try:
            await self.generate(LLMRequest(prompt="ping", max_tokens=1, temperature=0.0))
        except Exception as exc:
            return ProviderHealth(
                healthy=False,
                response_time_ms=(time.monotonic() - started) * 1000,
                error_message=str(exc),
            )
        return ProviderHealth(
            healthy=True,
            response_time_ms=(time.monotonic() - started) * 1000,
        )

    async def close(self) -> None:
        return None
