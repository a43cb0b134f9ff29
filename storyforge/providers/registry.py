"""
Provider registry -- ordered, health-annotated list of generation backends.

Health changes come from two places only, both owned by the router:
  - run_health_checks() probes (healthy / unavailable)
  - the circuit breaker: N consecutive retriable failures inside a window
    mark a provider degraded for a cooldown; after the cooldown a single
    probe request is let through (half-open) and its outcome decides
    between healthy and another cooldown.
A single failed request never flips health on its own.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from storyforge.observability.metrics import provider_health_changes

logger = logging.getLogger(__name__)


class ProviderHealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


class ProviderDescriptor(BaseModel):
    provider_id: str
    priority: int = Field(default=100, ge=0)
    primary: bool = False
    health: ProviderHealthStatus = ProviderHealthStatus.HEALTHY
    rate_per_minute: int = Field(default=60, ge=1)
    rate_per_day: int = Field(default=1000, ge=1)
    cost_per_1k_units: float = Field(default=0.0, ge=0.0)


class ProviderStats(BaseModel):
    requests: int = 0
    successes: int = 0
    failures: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0

    @property
    def success_rate(self) -> float:
        return self.successes / self.requests if self.requests else 1.0


class ProviderSnapshot(BaseModel):
    descriptor: ProviderDescriptor
    stats: ProviderStats
    consecutive_failures: int
    degraded_until: float | None = None
    last_checked_at: datetime | None = None
    last_error: str = ""
    success_rate: float = 1.0


@dataclass
class BreakerPolicy:
    failure_threshold: int = 3
    failure_window_seconds: float = 60.0
    cooldown_seconds: float = 30.0


@dataclass
class _ProviderState:
    descriptor: ProviderDescriptor
    stats: ProviderStats = field(default_factory=ProviderStats)
    consecutive_failures: int = 0
    last_failure_at: float = 0.0
    degraded_until: float | None = None
    probe_in_flight: bool = False
    minute_calls: deque = field(default_factory=deque)
    day: date | None = None
    day_calls: int = 0
    last_checked_at: datetime | None = None
    last_error: str = ""


def _rank_key(state: _ProviderState) -> tuple[bool, int, str]:
    return (not state.descriptor.primary, state.descriptor.priority, state.descriptor.provider_id)


class ProviderRegistry:

    def __init__(
        self,
        descriptors: list[ProviderDescriptor] | None = None,
        breaker: BreakerPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._breaker = breaker or BreakerPolicy()
        self._clock = clock
        self._lock = threading.Lock()
        self._states: dict[str, _ProviderState] = {}
        for descriptor in descriptors or []:
            self.register(descriptor)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def register(self, descriptor: ProviderDescriptor) -> None:
        with self._lock:
            if descriptor.provider_id in self._states:
                raise ValueError(f"Provider '{descriptor.provider_id}' already registered")
            descriptor = descriptor.model_copy()
            if descriptor.primary:
                for state in self._states.values():
                    state.descriptor.primary = False
            self._states[descriptor.provider_id] = _ProviderState(descriptor=descriptor)
            self._ensure_primary()

    def set_primary(self, provider_id: str) -> None:
        with self._lock:
            self._require(provider_id)
            for pid, state in self._states.items():
                state.descriptor.primary = pid == provider_id
        logger.info("Primary provider set to %s", provider_id)

    def _ensure_primary(self) -> None:
        if self._states and not any(s.descriptor.primary for s in self._states.values()):
            first = min(self._states.values(), key=lambda s: s.descriptor.priority)
            first.descriptor.primary = True

    def _require(self, provider_id: str) -> _ProviderState:
        state = self._states.get(provider_id)
        if state is None:
            raise KeyError(f"Unknown provider '{provider_id}'")
        return state

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def ranked(self) -> list[ProviderDescriptor]:
        with self._lock:
            states = sorted(self._states.values(), key=_rank_key)
            return [s.descriptor.model_copy() for s in states]

    def acquire(self, exclude: set[str]) -> ProviderDescriptor | None:
        """Pick the best eligible provider not in ``exclude`` and take a rate slot.

        Providers over their local rate ceiling are skipped without an
        attempt; degraded providers are only eligible once their cooldown
        has elapsed, and then only for a single probe at a time.
        """
        now = self._clock()
        today = datetime.now(timezone.utc).date()
        with self._lock:
            states = sorted(self._states.values(), key=_rank_key)
            for state in states:
                descriptor = state.descriptor
                if descriptor.provider_id in exclude:
                    continue
                if descriptor.health == ProviderHealthStatus.UNAVAILABLE:
                    continue
                if descriptor.health == ProviderHealthStatus.DEGRADED:
                    if state.probe_in_flight or (state.degraded_until or 0.0) > now:
                        continue
                if not self._take_rate_slot(state, now, today):
                    logger.info("Provider %s at its rate ceiling, skipping", descriptor.provider_id)
                    continue
                if descriptor.health == ProviderHealthStatus.DEGRADED:
                    state.probe_in_flight = True
                return descriptor.model_copy()
        return None

    def _take_rate_slot(self, state: _ProviderState, now: float, today: date) -> bool:
        calls = state.minute_calls
        while calls and now - calls[0] >= 60.0:
            calls.popleft()
        if state.day != today:
            state.day = today
            state.day_calls = 0
        if len(calls) >= state.descriptor.rate_per_minute:
            return False
        if state.day_calls >= state.descriptor.rate_per_day:
            return False
        calls.append(now)
        state.day_calls += 1
        return True

    # ------------------------------------------------------------------
    # Outcomes (circuit breaker)
    # ------------------------------------------------------------------

    def record_success(self, provider_id: str, tokens: int = 0, cost: float = 0.0) -> None:
        with self._lock:
            state = self._require(provider_id)
            state.stats.requests += 1
            state.stats.successes += 1
            state.stats.total_tokens += tokens
            state.stats.total_cost += cost
            state.consecutive_failures = 0
            if state.probe_in_flight:
                state.probe_in_flight = False
                state.degraded_until = None
                self._set_health(state, ProviderHealthStatus.HEALTHY)

    def record_failure(self, provider_id: str, error: str = "") -> None:
        """Count a retriable failure; crossing the threshold degrades the provider."""
        now = self._clock()
        with self._lock:
            state = self._require(provider_id)
            state.stats.requests += 1
            state.stats.failures += 1
            state.last_error = error
            if now - state.last_failure_at > self._breaker.failure_window_seconds:
                state.consecutive_failures = 0
            state.consecutive_failures += 1
            state.last_failure_at = now

            was_probe = state.probe_in_flight
            state.probe_in_flight = False
            if was_probe or state.consecutive_failures >= self._breaker.failure_threshold:
                if state.descriptor.health != ProviderHealthStatus.UNAVAILABLE:
                    state.degraded_until = now + self._breaker.cooldown_seconds
                    self._set_health(state, ProviderHealthStatus.DEGRADED)

    def record_outcome_neutral(self, provider_id: str) -> None:
        """Release a probe slot without judging the provider (cancelled or rejected call)."""
        with self._lock:
            state = self._require(provider_id)
            state.stats.requests += 1
            state.probe_in_flight = False

    def release_probe(self, provider_id: str) -> None:
        """Hand back a probe slot for a call that was never made."""
        with self._lock:
            self._require(provider_id).probe_in_flight = False

    def record_probe(self, provider_id: str, healthy: bool, error: str = "") -> None:
        """Apply a health-check result. The only path to/from UNAVAILABLE."""
        with self._lock:
            state = self._require(provider_id)
            state.last_checked_at = datetime.now(timezone.utc)
            if healthy:
                state.consecutive_failures = 0
                state.degraded_until = None
                state.probe_in_flight = False
                self._set_health(state, ProviderHealthStatus.HEALTHY)
            else:
                state.last_error = error
                self._set_health(state, ProviderHealthStatus.UNAVAILABLE)

    def set_health(self, provider_id: str, health: ProviderHealthStatus) -> None:
        """Operator override, e.g. to drain a provider."""
        with self._lock:
            state = self._require(provider_id)
            state.degraded_until = (
                self._clock() + self._breaker.cooldown_seconds
                if health == ProviderHealthStatus.DEGRADED
                else None
            )
            self._set_health(state, health)

    def _set_health(self, state: _ProviderState, health: ProviderHealthStatus) -> None:
        if state.descriptor.health == health:
            return
        logger.warning(
            "Provider %s health %s -> %s",
            state.descriptor.provider_id, state.descriptor.health.value, health.value,
        )
        state.descriptor.health = health
        provider_health_changes.labels(provider=state.descriptor.provider_id, health=health.value).inc()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, provider_id: str) -> ProviderDescriptor:
        with self._lock:
            return self._require(provider_id).descriptor.model_copy()

    def provider_ids(self) -> list[str]:
        return [d.provider_id for d in self.ranked()]

    def total_rate_per_minute(self) -> int:
        with self._lock:
            return sum(s.descriptor.rate_per_minute for s in self._states.values())

    def snapshot(self) -> list[ProviderSnapshot]:
        with self._lock:
            states = sorted(self._states.values(), key=_rank_key)
            return [
                ProviderSnapshot(
                    descriptor=s.descriptor.model_copy(),
                    stats=s.stats.model_copy(),
                    consecutive_failures=s.consecutive_failures,
                    degraded_until=s.degraded_until,
                    last_checked_at=s.last_checked_at,
                    last_error=s.last_error,
                    success_rate=s.stats.success_rate,
                )
                for s in states
            ]
