"""
Generation Service -- HTTP and WebSocket surface of the orchestrator.

Responsibilities:
1. POST /api/generations                  -- submit a story request
2. GET  /api/generations/{id}             -- poll status, attempts, verdict, artifact
3. POST /api/generations/{id}/cancel      -- cancel before safety checking
4. POST /api/generations/{id}/decision    -- approve / reject / edit a draft
5. GET  /api/reviews                      -- drafts waiting for a reviewer
6. GET|PUT /api/quotas/{account_id}       -- quota usage, tier and bonus credits
7. GET  /api/providers, POST /api/providers/health-check
8. POST /api/assets                       -- register an uploaded asset
9. WebSocket /ws                          -- push every status change

Lifecycle tasks live in this process; on startup unfinished requests are
resumed from the store.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from services.generation_service.config import GenerationServiceConfig
from services.generation_service.ws_manager import ConnectionManager
from storyforge.assets.analysis import CachedAssetAnalyzer, DescriptorAssetAnalyzer
from storyforge.assets.resolver import (
    Asset,
    AssetResolver,
    HttpAssetResolver,
    InMemoryAssetResolver,
)
from storyforge.cache.result_cache import ResultCache, build_cache
from storyforge.contracts.errors import (
    GenerationError,
    InvalidStateError,
    ReasonCode,
    RequestNotFound,
    ValidationError,
)
from storyforge.contracts.models import (
    GenerationParameters,
    GenerationRequest,
    ReviewDecision,
    StatusView,
)
from storyforge.llm_adapter import build_providers
from storyforge.logging.logger import setup_logging
from storyforge.observability.metrics import metrics_response
from storyforge.orchestrator.engine import Orchestrator, OrchestratorSettings
from storyforge.persistence.store import (
    GenerationStore,
    InMemoryGenerationStore,
    SQLGenerationStore,
)
from storyforge.prompts.assembler import PromptAssembler
from storyforge.providers.registry import BreakerPolicy, ProviderRegistry
from storyforge.providers.router import ProviderRouter
from storyforge.quota.ledger import QuotaLedger
from storyforge.safety.classifiers import build_classifier
from storyforge.safety.pipeline import SafetyPipeline

SERVICE_NAME = "generation_service"
orchestrator: Orchestrator | None = None
asset_resolver: AssetResolver | None = None
cfg: GenerationServiceConfig | None = None
manager = ConnectionManager()

logger = logging.getLogger(SERVICE_NAME)


async def build_orchestrator(
    config: GenerationServiceConfig,
    store: GenerationStore,
    assets: AssetResolver,
    cache: ResultCache,
) -> Orchestrator:
    providers = build_providers([p.provider_id for p in config.providers])
    registry = ProviderRegistry(
        [p.to_descriptor(primary=p.provider_id == config.primary_provider) for p in config.providers],
        breaker=BreakerPolicy(
            failure_threshold=config.breaker_failure_threshold,
            failure_window_seconds=config.breaker_window_seconds,
            cooldown_seconds=config.breaker_cooldown_seconds,
        ),
    )
    router = ProviderRouter(
        registry,
        providers,
        call_timeout=config.provider_call_timeout,
        health_check_timeout=config.health_check_timeout,
    )
    ledger = QuotaLedger(
        default_tier=config.default_tier,
        accounts=await store.load_quota_accounts(),
    )
    return Orchestrator(
        ledger=ledger,
        router=router,
        safety=SafetyPipeline(
            build_classifier(config.classifier),
            classifier_timeout=config.classifier_timeout,
        ),
        assembler=PromptAssembler(),
        store=store,
        assets=assets,
        analyzer=CachedAssetAnalyzer(
            DescriptorAssetAnalyzer(), cache, ttl_seconds=config.cache_ttl_seconds
        ),
        settings=OrchestratorSettings(
            dedupe_window_seconds=config.dedupe_window_seconds,
            max_concurrent_per_requester=config.max_concurrent_per_requester,
            max_concurrent_global=config.max_concurrent_global,
        ),
    )


async def _health_check_loop(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        if orchestrator is None:
            continue
        try:
            await orchestrator.run_health_checks()
        except Exception:
            logger.exception("Periodic provider health check failed")


async def _broadcast_status(view: StatusView) -> None:
    await manager.broadcast(
        json.dumps({"type": "status", "request": view.model_dump(mode="json")})
    )


@asynccontextmanager
async def lifespan(application: FastAPI):
    global orchestrator, asset_resolver, cfg
    cfg = GenerationServiceConfig.from_env()
    log = setup_logging(SERVICE_NAME, cfg.log_level)

    if cfg.database_url:
        store: GenerationStore = SQLGenerationStore(cfg.database_url)
    else:
        log.warning("DATABASE_URL not set; generation records are kept in memory only")
        store = InMemoryGenerationStore()
    await store.initialize()

    cache = build_cache(cfg.redis_url, capacity=cfg.cache_capacity, default_ttl=cfg.cache_ttl_seconds)
    if cfg.asset_service_url:
        asset_resolver = HttpAssetResolver(cfg.asset_service_url)
    else:
        asset_resolver = InMemoryAssetResolver()
    orchestrator = await build_orchestrator(cfg, store, asset_resolver, cache)
    unsubscribe = orchestrator.subscribe(_broadcast_status)
    await orchestrator.resume()

    health_task = None
    if cfg.health_check_interval > 0:
        health_task = asyncio.create_task(_health_check_loop(cfg.health_check_interval))

    log.info(
        "Generation Service ready",
        extra={"_extra": {"providers": [p.provider_id for p in cfg.providers]}},
    )
    yield

    log.info("Shutting down")
    if health_task:
        health_task.cancel()
        await asyncio.gather(health_task, return_exceptions=True)
    unsubscribe()
    await orchestrator.close()
    await cache.close()
    await asset_resolver.close()
    await store.close()
    orchestrator = None


app = FastAPI(
    title="StoryForge - Generation Service",
    version="0.1.0",
    description="Quota-aware, safety-checked story generation with human approval",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


def _get_orchestrator() -> Orchestrator:
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialized")
    return orchestrator


@app.exception_handler(GenerationError)
async def generation_error_handler(request: Request, exc: GenerationError):
    if isinstance(exc, RequestNotFound):
        status_code = 404
    elif isinstance(exc, InvalidStateError):
        status_code = 409
    elif isinstance(exc, ValidationError):
        status_code = 422
    else:
        logger.error("Request failed: %s", exc.message)
        status_code = 500
    return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})


# ---------------------------------------------------------------------------
# Health & metrics
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    orch = orchestrator
    return {
        "status": "ok" if orch else "starting",
        "service": SERVICE_NAME,
        "ws_connections": manager.connection_count,
        "pending_reviews": len(orch.pending_reviews()) if orch else 0,
    }


@app.get("/metrics")
async def metrics():
    return metrics_response()


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await manager.connect(websocket)
    try:
        if orchestrator:
            for view in orchestrator.pending_reviews():
                await websocket.send_text(
                    json.dumps({"type": "review", "request": view.model_dump(mode="json")})
                )
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        manager.disconnect(websocket)
    except Exception:
        logger.exception("WebSocket error")
        manager.disconnect(websocket)


# ---------------------------------------------------------------------------
# Generations
# ---------------------------------------------------------------------------

class GenerationCreate(BaseModel):
    requester_id: str = Field(min_length=1)
    target_profile_id: str | None = None
    prompt: str
    parameters: GenerationParameters = Field(default_factory=GenerationParameters)
    asset_ids: list[str] = Field(default_factory=list)


@app.post("/api/generations", status_code=202)
async def submit_generation(body: GenerationCreate):
    orch = _get_orchestrator()
    request = GenerationRequest(
        requester_id=body.requester_id,
        target_profile_id=body.target_profile_id,
        prompt=body.prompt,
        parameters=body.parameters,
        asset_ids=tuple(body.asset_ids),
    )
    result = await orch.submit(request)
    if result.failure and result.failure.reason == ReasonCode.QUOTA_EXCEEDED:
        return JSONResponse(
            status_code=429,
            content={
                **result.model_dump(mode="json"),
                "reset_at": result.failure.details.get("reset_at"),
            },
        )
    return result


@app.get("/api/generations/{request_id}")
async def get_generation(request_id: str):
    return await _get_orchestrator().get_status(request_id)


@app.post("/api/generations/{request_id}/cancel")
async def cancel_generation(request_id: str):
    return await _get_orchestrator().cancel(request_id)


@app.post("/api/generations/{request_id}/decision")
async def decide_generation(request_id: str, decision: ReviewDecision):
    return await _get_orchestrator().decide(request_id, decision)


@app.get("/api/reviews")
async def list_reviews():
    return _get_orchestrator().pending_reviews()


# ---------------------------------------------------------------------------
# Quotas
# ---------------------------------------------------------------------------

class AccountUpdate(BaseModel):
    tier: str
    bonus_credits: int = Field(default=0, ge=0)
    bonus_expires_at: datetime | None = None


@app.get("/api/quotas/{account_id}")
async def get_quota(account_id: str):
    return _get_orchestrator().get_quota(account_id)


@app.put("/api/quotas/{account_id}")
async def update_quota(account_id: str, body: AccountUpdate):
    try:
        return await _get_orchestrator().update_account(
            account_id, body.tier, body.bonus_credits, body.bonus_expires_at
        )
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

@app.get("/api/providers")
async def list_providers():
    return _get_orchestrator().providers()


@app.post("/api/providers/health-check")
async def check_providers():
    return await _get_orchestrator().run_health_checks()


# ---------------------------------------------------------------------------
# Assets
# ---------------------------------------------------------------------------

@app.post("/api/assets", status_code=201)
async def register_asset(asset: Asset):
    if asset_resolver is None:
        raise HTTPException(status_code=503, detail="Asset store not initialized")
    if not isinstance(asset_resolver, InMemoryAssetResolver):
        raise HTTPException(status_code=409, detail="Assets are managed by the asset service")
    asset_resolver.add(asset)
    return {"asset_id": asset.asset_id, "registered": True}
