from __future__ import annotations

import os
import re
from dataclasses import dataclass

from storyforge.providers.registry import ProviderDescriptor


def _env_key(provider_id: str) -> str:
    return re.sub(r"[^A-Z0-9]", "_", provider_id.upper())


@dataclass(frozen=True)
class ProviderSettings:
    provider_id: str
    priority: int
    rate_per_minute: int
    rate_per_day: int
    cost_per_1k_units: float

    @classmethod
    def from_env(cls, provider_id: str, position: int = 0) -> ProviderSettings:
        prefix = _env_key(provider_id)
        return cls(
            provider_id=provider_id,
            priority=int(os.environ.get(f"{prefix}_PRIORITY", str(position * 10))),
            rate_per_minute=int(os.environ.get(f"{prefix}_RATE_PER_MINUTE", "60")),
            rate_per_day=int(os.environ.get(f"{prefix}_RATE_PER_DAY", "1000")),
            cost_per_1k_units=float(os.environ.get(f"{prefix}_COST_PER_1K", "0") or 0),
        )

    def to_descriptor(self, primary: bool = False) -> ProviderDescriptor:
        return ProviderDescriptor(
            provider_id=self.provider_id,
            priority=self.priority,
            primary=primary,
            rate_per_minute=self.rate_per_minute,
            rate_per_day=self.rate_per_day,
            cost_per_1k_units=self.cost_per_1k_units,
        )


@dataclass(frozen=True)
class GenerationServiceConfig:
    providers: tuple[ProviderSettings, ...]
    primary_provider: str
    database_url: str | None
    redis_url: str | None
    asset_service_url: str | None
    log_level: str
    provider_call_timeout: float
    health_check_timeout: float
    health_check_interval: float
    classifier: str
    classifier_timeout: float
    breaker_failure_threshold: int
    breaker_window_seconds: float
    breaker_cooldown_seconds: float
    dedupe_window_seconds: float
    max_concurrent_per_requester: int
    max_concurrent_global: int | None
    cache_capacity: int
    cache_ttl_seconds: float
    default_tier: str

    @classmethod
    def from_env(cls) -> GenerationServiceConfig:
        names = [
            n.strip().lower()
            for n in os.environ.get("GENERATION_PROVIDERS", "mock").split(",")
            if n.strip()
        ] or ["mock"]
        names = list(dict.fromkeys(names))
        global_limit = int(os.environ.get("MAX_CONCURRENT_GLOBAL", "0") or 0)
        return cls(
            providers=tuple(ProviderSettings.from_env(n, i) for i, n in enumerate(names)),
            primary_provider=os.environ.get("GENERATION_PRIMARY_PROVIDER", names[0]).strip().lower(),
            database_url=os.environ.get("DATABASE_URL") or None,
            redis_url=os.environ.get("REDIS_URL") or None,
            asset_service_url=os.environ.get("ASSET_SERVICE_URL") or None,
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            provider_call_timeout=float(os.environ.get("PROVIDER_CALL_TIMEOUT", "60")),
            health_check_timeout=float(os.environ.get("HEALTH_CHECK_TIMEOUT", "10")),
            health_check_interval=float(os.environ.get("HEALTH_CHECK_INTERVAL", "60")),
            classifier=os.environ.get("SAFETY_CLASSIFIER", "rule_based"),
            classifier_timeout=float(os.environ.get("CLASSIFIER_TIMEOUT", "10")),
            breaker_failure_threshold=int(os.environ.get("BREAKER_FAILURE_THRESHOLD", "3")),
            breaker_window_seconds=float(os.environ.get("BREAKER_WINDOW_SECONDS", "60")),
            breaker_cooldown_seconds=float(os.environ.get("BREAKER_COOLDOWN_SECONDS", "30")),
            dedupe_window_seconds=float(os.environ.get("DEDUPE_WINDOW_SECONDS", "600")),
            max_concurrent_per_requester=int(os.environ.get("MAX_CONCURRENT_PER_REQUESTER", "2")),
            max_concurrent_global=global_limit or None,
            cache_capacity=int(os.environ.get("RESULT_CACHE_CAPACITY", "1024")),
            cache_ttl_seconds=float(os.environ.get("RESULT_CACHE_TTL_SECONDS", "86400")),
            default_tier=os.environ.get("QUOTA_DEFAULT_TIER", "free"),
        )
