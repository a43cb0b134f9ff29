from storyforge.llm_adapter.base import LLMProvider
from storyforge.llm_adapter.factory import build_provider, build_providers
from storyforge.llm_adapter.models import LLMRequest, LLMResponse, ProviderHealth
from storyforge.llm_adapter.mock_provider import MockProvider

__all__ = [
    "LLMProvider",
    "LLMRequest",
    "LLMResponse",
    "MockProvider",
    "ProviderHealth",
    "build_provider",
    "build_providers",
]
