"""
OpenAI-compatible generation provider.

Works with any API that speaks the OpenAI Chat Completions protocol:
  - OpenAI      (base_url=https://api.openai.com/v1)
  - Groq        (base_url=https://api.groq.com/openai/v1)
  - Google      (base_url=https://generativelanguage.googleapis.com/v1beta/openai)
  - OpenRouter  (base_url=https://openrouter.ai/api/v1)
  - local       (Ollama / LM Studio, LLM_BASE_URL required)

Transport errors are classified into ErrorKind so the router can decide
between failover and abort.
"""

from __future__ import annotations

import hashlib
import os

import openai
from openai import AsyncOpenAI

from storyforge.contracts.errors import ErrorKind, ProviderError
from storyforge.llm_adapter.base import LLMProvider
from storyforge.llm_adapter.models import LLMRequest, LLMResponse

_BASE_URLS: dict[str, str] = {
    "openai":     "https://api.openai.com/v1",
    "groq":       "https://api.groq.com/openai/v1",
    "gemini":     "https://generativelanguage.googleapis.com/v1beta/openai/",
    "openrouter": "https://openrouter.ai/api/v1",
}

_DEFAULT_MODELS: dict[str, str] = {
    "openai":     "gpt-4o-mini",
    "groq":       "llama-3.3-70b-versatile",
    "gemini":     "gemini-2.0-flash",
    "openrouter": "meta-llama/llama-3.3-70b-instruct:free",
}


def classify_openai_error(exc: Exception) -> ErrorKind:
    # APITimeoutError subclasses APIConnectionError, check it first
    if isinstance(exc, openai.APITimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, openai.RateLimitError):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ErrorKind.AUTHENTICATION
    if isinstance(exc, (openai.BadRequestError, openai.UnprocessableEntityError)):
        return ErrorKind.PAYLOAD_REJECTED
    if isinstance(exc, (openai.APIConnectionError, openai.InternalServerError)):
        return ErrorKind.TRANSIENT
    if isinstance(exc, openai.APIStatusError):
        return ErrorKind.TRANSIENT if exc.status_code >= 500 else ErrorKind.PAYLOAD_REJECTED
    return ErrorKind.INTERNAL


class OpenAIProvider(LLMProvider):
    """
    OpenAI Chat Completions adapter.

    Reads from env, prefixed with the provider name when set
    (e.g. GROQ_API_KEY before LLM_API_KEY):
      <NAME>_API_KEY / LLM_API_KEY / OPENAI_API_KEY
      <NAME>_BASE_URL / LLM_BASE_URL
      <NAME>_MODEL / LLM_MODEL
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        provider_name: str = "openai",
    ) -> None:
        self.name = provider_name
        prefix = provider_name.upper()

        self._api_key = (
            api_key
            or os.environ.get(f"{prefix}_API_KEY", "")
            or os.environ.get("LLM_API_KEY", "")
            or os.environ.get("OPENAI_API_KEY", "")
        )
        # Local servers usually don't check the key, but the client requires one.
        if not self._api_key and provider_name == "local":
            self._api_key = "local-placeholder-key"
        elif not self._api_key:
            raise ValueError(
                f"An API key is required for provider '{provider_name}'. "
                f"Set {prefix}_API_KEY or LLM_API_KEY in your environment."
            )

        self._base_url = (
            base_url
            or os.environ.get(f"{prefix}_BASE_URL", "")
            or os.environ.get("LLM_BASE_URL", "")
            or _BASE_URLS.get(provider_name, _BASE_URLS["openai"])
        )

        self._model = (
            model
            or os.environ.get(f"{prefix}_MODEL", "")
            or os.environ.get("LLM_MODEL", "")
            or _DEFAULT_MODELS.get(provider_name, "gpt-4o-mini")
        )

        # The router enforces its own deadline; retries belong to the router too.
        self._client = AsyncOpenAI(
            api_key=self._api_key,
            base_url=self._base_url,
            timeout=float(os.environ.get("LLM_REQUEST_TIMEOUT", "120")),
            max_retries=0,
        )

    async def generate(self, request: LLMRequest) -> LLMResponse:
        prompt_hash = hashlib.sha256(request.prompt.encode()).hexdigest()

        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

        try:
            response = await self._client.chat.completions.create(
                model=request.model or self._model,
                temperature=request.temperature,
                max_tokens=request.max_tokens,
                messages=messages,
            )
        except openai.OpenAIError as exc:
            raise ProviderError(classify_openai_error(exc), str(exc)) from exc

        if not response.choices:
            raise ProviderError(ErrorKind.TRANSIENT, "provider returned no choices")

        choice = response.choices[0]
        usage = response.usage

        return LLMResponse(
            content=choice.message.content or "",
            model=response.model,
            prompt_tokens=usage.prompt_tokens if usage else 0,
            completion_tokens=usage.completion_tokens if usage else 0,
            total_tokens=usage.total_tokens if usage else 0,
            prompt_hash=prompt_hash,
        )

    async def close(self) -> None:
        await self._client.close()
