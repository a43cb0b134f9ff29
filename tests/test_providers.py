"""Tests for provider clients, the factory and service configuration."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from services.generation_service.config import GenerationServiceConfig, ProviderSettings
from storyforge.contracts.errors import ErrorKind, ProviderError
from storyforge.llm_adapter import LLMRequest, MockProvider, build_provider, build_providers
from storyforge.llm_adapter.openai_provider import OpenAIProvider, classify_openai_error

_REQUEST = httpx.Request("POST", "https://api.example.com/v1/chat/completions")


def _status_error(cls, status):
    return cls("error", response=httpx.Response(status, request=_REQUEST), body=None)


class TestErrorClassification:

    @pytest.mark.parametrize(
        "exc, kind",
        [
            (openai.APITimeoutError(request=_REQUEST), ErrorKind.TIMEOUT),
            (openai.APIConnectionError(request=_REQUEST), ErrorKind.TRANSIENT),
            (_status_error(openai.RateLimitError, 429), ErrorKind.RATE_LIMITED),
            (_status_error(openai.AuthenticationError, 401), ErrorKind.AUTHENTICATION),
            (_status_error(openai.BadRequestError, 400), ErrorKind.PAYLOAD_REJECTED),
            (_status_error(openai.InternalServerError, 503), ErrorKind.TRANSIENT),
            (ValueError("odd"), ErrorKind.INTERNAL),
        ],
    )
    def test_classification(self, exc, kind):
        assert classify_openai_error(exc) == kind

    def test_retriable_kinds(self):
        assert ErrorKind.TIMEOUT.retriable
        assert ErrorKind.INTERNAL.retriable
        assert not ErrorKind.PAYLOAD_REJECTED.retriable
        assert not ErrorKind.AUTHENTICATION.retriable


class TestOpenAIProvider:

    def _provider(self, create):
        provider = OpenAIProvider(api_key="sk-test", provider_name="groq")
        provider._client = MagicMock()
        provider._client.chat.completions.create = create
        return provider

    @pytest.mark.asyncio
    async def test_generate_maps_usage(self):
        completion = SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content="A story."))],
            usage=SimpleNamespace(prompt_tokens=12, completion_tokens=30, total_tokens=42),
            model="llama-3.3-70b-versatile",
        )
        create = AsyncMock(return_value=completion)
        provider = self._provider(create)

        response = await provider.generate(
            LLMRequest(prompt="Write", system_prompt="Be kind", max_tokens=50)
        )

        assert response.content == "A story."
        assert response.total_tokens == 42
        messages = create.await_args.kwargs["messages"]
        assert [m["role"] for m in messages] == ["system", "user"]
        assert create.await_args.kwargs["model"] == "llama-3.3-70b-versatile"

    @pytest.mark.asyncio
    async def test_transport_error_becomes_provider_error(self):
        provider = self._provider(AsyncMock(side_effect=_status_error(openai.RateLimitError, 429)))

        with pytest.raises(ProviderError) as exc_info:
            await provider.generate(LLMRequest(prompt="Write"))

        assert exc_info.value.kind == ErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_empty_choices_are_transient(self):
        empty = SimpleNamespace(choices=[], usage=None, model="m")
        provider = self._provider(AsyncMock(return_value=empty))

        with pytest.raises(ProviderError) as exc_info:
            await provider.generate(LLMRequest(prompt="Write"))

        assert exc_info.value.kind == ErrorKind.TRANSIENT

    def test_missing_key_rejected(self, monkeypatch):
        for name in ("GROQ_API_KEY", "LLM_API_KEY", "OPENAI_API_KEY"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(ValueError):
            OpenAIProvider(provider_name="groq")


class TestFactory:

    @pytest.mark.asyncio
    async def test_mock_is_deterministic(self):
        provider = MockProvider()
        first = await provider.generate(LLMRequest(prompt="same"))
        second = await provider.generate(LLMRequest(prompt="same"))

        assert first.content == second.content
        assert provider.call_count == 2

    def test_build_providers_dedupes_names(self):
        providers = build_providers(["mock", "MOCK#backup", "mock", " "])
        assert list(providers) == ["mock", "mock#backup"]

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            build_provider("skynet")

    def test_no_providers(self):
        with pytest.raises(ValueError):
            build_providers([])


class TestConfig:

    def test_defaults(self, monkeypatch):
        for name in ("GENERATION_PROVIDERS", "GENERATION_PRIMARY_PROVIDER", "DATABASE_URL",
                     "MAX_CONCURRENT_GLOBAL", "MOCK_PRIORITY"):
            monkeypatch.delenv(name, raising=False)

        cfg = GenerationServiceConfig.from_env()

        assert [p.provider_id for p in cfg.providers] == ["mock"]
        assert cfg.primary_provider == "mock"
        assert cfg.database_url is None
        assert cfg.max_concurrent_global is None

    def test_provider_overrides(self, monkeypatch):
        monkeypatch.setenv("GENERATION_PROVIDERS", "groq, openai")
        monkeypatch.setenv("GENERATION_PRIMARY_PROVIDER", "openai")
        monkeypatch.setenv("GROQ_RATE_PER_MINUTE", "30")
        monkeypatch.setenv("OPENAI_COST_PER_1K", "0.6")

        cfg = GenerationServiceConfig.from_env()
        groq, oai = cfg.providers

        assert cfg.primary_provider == "openai"
        assert (groq.priority, oai.priority) == (0, 10)
        assert groq.rate_per_minute == 30
        assert oai.to_descriptor(primary=True).cost_per_1k_units == 0.6

    def test_suffixed_provider_env_key(self, monkeypatch):
        monkeypatch.setenv("MOCK_BACKUP_PRIORITY", "5")
        assert ProviderSettings.from_env("mock#backup", 3).priority == 5
