"""
Provider router -- the only component that retries.

invoke() walks the registry's ranked providers: each call gets a hard
deadline, retriable failures fail over to the next provider, non-retriable
failures abort the request. Every invocation is reported as a
GenerationAttempt through ``on_attempt``, including failed and cancelled
ones, so attempts can be audited and costed in order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from storyforge.contracts.errors import (
    ErrorKind,
    GenerationTimeout,
    ProviderError,
    ProviderRejected,
    ProviderUnavailable,
)
from storyforge.contracts.models import AttemptOutcome, GenerationAttempt, Usage, utcnow
from storyforge.llm_adapter import LLMProvider, LLMRequest, LLMResponse, ProviderHealth
from storyforge.observability.metrics import llm_tokens, provider_attempts, provider_latency
from storyforge.providers.registry import ProviderDescriptor, ProviderRegistry

logger = logging.getLogger(__name__)

AttemptCallback = Callable[[GenerationAttempt], None]


@dataclass
class RoutedResponse:
    provider_id: str
    response: LLMResponse
    cost: float


def attempt_cost(descriptor: ProviderDescriptor, total_tokens: int) -> float:
    return round(total_tokens / 1000.0 * descriptor.cost_per_1k_units, 6)


class ProviderRouter:

    def __init__(
        self,
        registry: ProviderRegistry,
        providers: dict[str, LLMProvider],
        call_timeout: float = 60.0,
        health_check_timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._providers = providers
        self._call_timeout = call_timeout
        self._health_check_timeout = health_check_timeout
        self._clock = clock

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    async def invoke(
        self,
        request_id: str,
        payload: LLMRequest,
        on_attempt: AttemptCallback | None = None,
        sequence_start: int = 0,
    ) -> RoutedResponse:
        attempted: set[str] = set()
        sequence = sequence_start
        failures: list[ErrorKind] = []
        last_error = ""

        while True:
            descriptor = self._registry.acquire(exclude=attempted)
            if descriptor is None:
                break
            provider_id = descriptor.provider_id
            attempted.add(provider_id)

            provider = self._providers.get(provider_id)
            if provider is None:
                logger.error("Provider %s is registered but has no client", provider_id)
                self._registry.release_probe(provider_id)
                continue

            sequence += 1
            started_at = self._clock()
            started = time.monotonic()
            kind: ErrorKind | None = None
            try:
                response = await asyncio.wait_for(
                    provider.generate(payload), timeout=self._call_timeout
                )
            except asyncio.TimeoutError:
                kind, message = ErrorKind.TIMEOUT, f"no response within {self._call_timeout:.1f}s"
            except ProviderError as exc:
                kind, message = exc.kind, str(exc)
            except asyncio.CancelledError:
                self._emit(on_attempt, GenerationAttempt(
                    request_id=request_id,
                    sequence=sequence,
                    provider_id=provider_id,
                    started_at=started_at,
                    ended_at=self._clock(),
                    outcome=AttemptOutcome.CANCELLED,
                ))
                self._registry.record_outcome_neutral(provider_id)
                provider_attempts.labels(provider=provider_id, outcome="cancelled").inc()
                raise
            except Exception as exc:
                logger.exception("Provider %s raised an unclassified error", provider_id)
                kind, message = ErrorKind.INTERNAL, str(exc)
            finally:
                provider_latency.labels(provider=provider_id).observe(time.monotonic() - started)

            if kind is None:
                cost = attempt_cost(descriptor, response.total_tokens)
                self._emit(on_attempt, GenerationAttempt(
                    request_id=request_id,
                    sequence=sequence,
                    provider_id=provider_id,
                    started_at=started_at,
                    ended_at=self._clock(),
                    usage=Usage(
                        prompt_tokens=response.prompt_tokens,
                        completion_tokens=response.completion_tokens,
                        total_tokens=response.total_tokens,
                    ),
                    cost=cost,
                    outcome=AttemptOutcome.SUCCESS,
                ))
                self._registry.record_success(provider_id, tokens=response.total_tokens, cost=cost)
                provider_attempts.labels(provider=provider_id, outcome="success").inc()
                llm_tokens.labels(provider=provider_id, direction="prompt").inc(response.prompt_tokens)
                llm_tokens.labels(provider=provider_id, direction="completion").inc(response.completion_tokens)
                logger.info(
                    "Request %s served by %s (attempt %d, %d tokens)",
                    request_id, provider_id, sequence, response.total_tokens,
                )
                return RoutedResponse(provider_id=provider_id, response=response, cost=cost)

            outcome = AttemptOutcome.TIMEOUT if kind == ErrorKind.TIMEOUT else AttemptOutcome.FAILURE
            self._emit(on_attempt, GenerationAttempt(
                request_id=request_id,
                sequence=sequence,
                provider_id=provider_id,
                started_at=started_at,
                ended_at=self._clock(),
                outcome=outcome,
                error_kind=kind,
                error_message=message[:500],
            ))
            provider_attempts.labels(provider=provider_id, outcome=outcome.value).inc()

            if not kind.retriable:
                self._registry.record_outcome_neutral(provider_id)
                logger.warning(
                    "Request %s aborted: %s refused the payload (%s)",
                    request_id, provider_id, kind.value,
                )
                raise ProviderRejected(provider_id, kind, message)

            self._registry.record_failure(provider_id, message)
            failures.append(kind)
            last_error = message
            logger.warning(
                "Request %s: %s failed (%s), failing over",
                request_id, provider_id, kind.value,
            )

        if failures and all(k == ErrorKind.TIMEOUT for k in failures):
            raise GenerationTimeout(
                f"All {len(failures)} providers timed out",
                failed_providers=len(failures),
            )
        raise ProviderUnavailable(failed_providers=len(failures), last_error=last_error)

    @staticmethod
    def _emit(callback: AttemptCallback | None, attempt: GenerationAttempt) -> None:
        if callback is not None:
            callback(attempt)

    # ------------------------------------------------------------------
    # Health checks
    # ------------------------------------------------------------------

    async def run_health_checks(self) -> dict[str, ProviderHealth]:
        """Probe every provider concurrently and apply the results to the registry."""
        ids = [pid for pid in self._registry.provider_ids() if pid in self._providers]
        results = await asyncio.gather(*(self._probe(pid) for pid in ids))
        return dict(zip(ids, results))

    async def _probe(self, provider_id: str) -> ProviderHealth:
        provider = self._providers[provider_id]
        try:
            health = await asyncio.wait_for(
                provider.health_check(), timeout=self._health_check_timeout
            )
        except asyncio.TimeoutError:
            health = ProviderHealth(healthy=False, error_message="health check timed out")
        except Exception as exc:
            logger.exception("Health check for %s failed", provider_id)
            health = ProviderHealth(healthy=False, error_message=str(exc))
        self._registry.record_probe(provider_id, health.healthy, health.error_message)
        return health

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
