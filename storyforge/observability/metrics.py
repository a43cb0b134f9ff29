from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from fastapi import Response


requests_submitted = Counter(
    "generation_requests_submitted_total",
    "Generation requests accepted or refused at submit",
    ["outcome"],
)

requests_finished = Counter(
    "generation_requests_finished_total",
    "Generation requests that reached a terminal status",
    ["status", "reason"],
)

requests_in_flight = Gauge(
    "generation_requests_in_flight",
    "Requests currently held by a lifecycle task",
)

provider_attempts = Counter(
    "provider_attempts_total",
    "Provider invocations by outcome",
    ["provider", "outcome"],
)

provider_latency = Histogram(
    "provider_latency_seconds",
    "Latency of a single provider invocation",
    ["provider"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

provider_health_changes = Counter(
    "provider_health_changes_total",
    "Provider health transitions",
    ["provider", "health"],
)

llm_tokens = Counter(
    "llm_tokens_total",
    "Total LLM tokens consumed",
    ["provider", "direction"],
)

quota_reservations = Counter(
    "quota_reservations_total",
    "Quota reservation attempts and refunds",
    ["result"],
)

safety_verdicts = Counter(
    "safety_verdicts_total",
    "Safety verdicts by stage and highest severity",
    ["stage", "severity"],
)

cache_lookups = Counter(
    "result_cache_lookups_total",
    "Result cache lookups",
    ["result"],
)


def metrics_response() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
