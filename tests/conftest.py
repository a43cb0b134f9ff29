"""
Shared fixtures for the StoryForge test suite.

ScriptedProvider replays a list of outcomes so failover, timeouts and
cancellation can be driven deterministically without network calls.
"""

import asyncio
import time
from datetime import datetime, timezone

import pytest

from storyforge.assets.analysis import CachedAssetAnalyzer, DescriptorAssetAnalyzer
from storyforge.assets.resolver import Asset, InMemoryAssetResolver
from storyforge.cache.result_cache import InMemoryResultCache
from storyforge.contracts.errors import ErrorKind, ProviderError
from storyforge.contracts.models import GenerationParameters, GenerationRequest, RequestStatus
from storyforge.llm_adapter import LLMProvider, LLMRequest, LLMResponse, ProviderHealth
from storyforge.orchestrator.engine import Orchestrator, OrchestratorSettings
from storyforge.persistence.store import InMemoryGenerationStore
from storyforge.prompts.assembler import PromptAssembler
from storyforge.providers.registry import ProviderDescriptor, ProviderRegistry
from storyforge.providers.router import ProviderRouter
from storyforge.quota.ledger import QuotaLedger
from storyforge.safety.pipeline import SafetyPipeline

SAFE_STORY = (
    "Title: Pip and the Moon\n\n"
    "Pip the bunny looked up at the moon. The moon smiled back. "
    "Pip hopped to the garden. She found a tiny seed. "
    "She planted it with care. Soon a flower grew. Pip was happy."
)

HANG = "hang"


class ScriptedProvider(LLMProvider):
    """Replays outcomes in order: "ok", "hang", an ErrorKind or an exception."""

    def __init__(self, name, outcomes=None, default="ok", content=SAFE_STORY, healthy=True):
        self.name = name
        self._outcomes = list(outcomes or [])
        self._default = default
        self.content = content
        self.healthy = healthy
        self.calls = 0

    async def generate(self, request: LLMRequest) -> LLMResponse:
        self.calls += 1
        outcome = self._outcomes.pop(0) if self._outcomes else self._default
        if outcome == HANG:
            await asyncio.Event().wait()
        if isinstance(outcome, ErrorKind):
            raise ProviderError(outcome, f"{self.name}: {outcome.value}")
        if isinstance(outcome, Exception):
            raise outcome
        return LLMResponse(
            content=self.content,
            model=self.name,
            prompt_tokens=20,
            completion_tokens=80,
            total_tokens=100,
        )

    async def health_check(self) -> ProviderHealth:
        if self.healthy:
            return ProviderHealth(healthy=True, response_time_ms=1.0)
        return ProviderHealth(healthy=False, error_message="probe failed")


class MutableClock:
    """Settable clock usable for both datetime and monotonic time sources."""

    def __init__(self, value):
        self.value = value

    def __call__(self):
        return self.value

    def advance(self, delta):
        self.value = self.value + delta


def make_registry(names, clock=None, **overrides):
    descriptors = [
        ProviderDescriptor(
            provider_id=name,
            priority=index * 10,
            primary=index == 0,
            **overrides.get(name, {}),
        )
        for index, name in enumerate(names)
    ]
    if clock is None:
        return ProviderRegistry(descriptors)
    return ProviderRegistry(descriptors, clock=clock)


def make_request(prompt="A bunny who learns to share carrots with friends", **kwargs):
    parameters = kwargs.pop("parameters", None) or GenerationParameters()
    kwargs.setdefault("requester_id", "parent-1")
    kwargs.setdefault("target_profile_id", "child-1")
    return GenerationRequest(prompt=prompt, parameters=parameters, **kwargs)


class Harness:
    """Wires an orchestrator with in-memory collaborators around given providers."""

    def __init__(self, providers, store=None, ledger=None, settings=None, assets=None, call_timeout=5.0,
                 clock=time.monotonic, resolver=None):
        self.providers = {p.name: p for p in providers}
        self.registry = make_registry(list(self.providers))
        self.router = ProviderRouter(self.registry, self.providers, call_timeout=call_timeout)
        self.store = store or InMemoryGenerationStore()
        self.ledger = ledger or QuotaLedger()
        self.cache = InMemoryResultCache()
        self.analyzer = DescriptorAssetAnalyzer()
        self.assets = resolver if resolver is not None else InMemoryAssetResolver(assets or [])
        self.orchestrator = Orchestrator(
            ledger=self.ledger,
            router=self.router,
            safety=SafetyPipeline(classifier_timeout=1.0),
            assembler=PromptAssembler(),
            store=self.store,
            assets=self.assets,
            analyzer=CachedAssetAnalyzer(self.analyzer, self.cache),
            settings=settings or OrchestratorSettings(),
            clock=clock,
        )

    async def settle(self, request_id):
        await asyncio.wait_for(self.orchestrator.wait_idle(request_id), timeout=5.0)
        return await self.orchestrator.get_status(request_id)

    async def wait_for_status(self, request_id, status: RequestStatus, timeout=5.0):
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            view = await self.orchestrator.get_status(request_id)
            if view.status == status:
                return view
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError(f"request stuck in {view.status.value}, expected {status.value}")
            await asyncio.sleep(0.01)


@pytest.fixture
def utc_clock():
    return MutableClock(datetime(2026, 10, 19, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def monotonic_clock():
    return MutableClock(1000.0)


@pytest.fixture
def owned_asset():
    return Asset(
        asset_id="asset-1",
        owner_id="parent-1",
        description="a red kite flying over a green hill",
        tags=["kite", "hill"],
    )
