"""FastAPI application wiring for the content coordinator."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request

from .config import AppConfig, load_config
from .dedup import DeduplicationIndex
from .domain import CategoryKey
from .errors import UnknownItemError
from .generation import GenerationEngine, HttpGenerationEngine
from .metrics import METRICS
from .models import (
    CleanPoolRequest,
    CleanPoolResponse,
    ContentRequest,
    ContentResponse,
    DeliveryHistoryResponse,
    LeaseActionRequest,
    LeaseActionResponse,
    PerformanceAccepted,
    PerformanceEvent,
    PersonalizationMeta,
    PoolStatsResponse,
    PrefillRequest,
    PrefillResponse,
    RefillRequest,
    SweepResponse,
    WeaknessListResponse,
)
from .planner import PersonalizationPlanner
from .pool import ContentPool, LeaseSweeper
from .replenishment import ReplenishmentCoordinator
from .services import ContentService
from .storage import SqliteContentStore, SqliteWeaknessStore
from .weakness import WeaknessAggregator


logger = logging.getLogger(__name__)

router = APIRouter()


def get_content_service(request: Request) -> ContentService:
    return request.app.state.content_service


async def startup(app: FastAPI) -> None:
    config: AppConfig = app.state.config or load_config()
    app.state.config = config

    content_store = SqliteContentStore(config.database_path)
    weakness_store = SqliteWeaknessStore(config.database_path)
    aggregator = WeaknessAggregator(weakness_store, config.scoring, METRICS)
    planner = PersonalizationPlanner(aggregator, config.planner)
    pool = ContentPool(content_store, content_store, config.pool, METRICS)
    engine = app.state.engine or HttpGenerationEngine(config.engine)
    coordinator = ReplenishmentCoordinator(
        pool,
        DeduplicationIndex(content_store, content_store),
        engine,
        planner,
        config=config.pool,
        retry=config.engine.retry,
        metrics=METRICS,
    )
    pool.set_low_stock_hook(coordinator.on_low_stock)
    sweeper = LeaseSweeper(pool)

    app.state.content_store = content_store
    app.state.weakness_store = weakness_store
    app.state.engine = engine
    app.state.coordinator = coordinator
    app.state.sweeper = sweeper
    app.state.content_service = ContentService(pool, coordinator, planner, aggregator, config.pool)

    await sweeper.start()
    logger.info("Content coordinator started with database %s", config.database_path)


async def shutdown(app: FastAPI) -> None:
    await app.state.sweeper.stop()
    if isinstance(app.state.engine, HttpGenerationEngine):
        await app.state.engine.aclose()
    app.state.content_store.close()
    app.state.weakness_store.close()
    logger.info("Content coordinator stopped")


def create_app(
    config: Optional[AppConfig] = None, engine: Optional[GenerationEngine] = None
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(application: FastAPI) -> AsyncIterator[None]:
        await startup(application)
        try:
            yield
        finally:
            await shutdown(application)

    application = FastAPI(title="Content Pool Coordinator", version="0.1.0", lifespan=lifespan)
    application.state.config = config
    application.state.engine = engine
    application.include_router(router)
    return application


# Delivery -------------------------------------------------------------------
@router.post("/v1/content", response_model=ContentResponse)
async def get_content(
    request: ContentRequest, service: ContentService = Depends(get_content_service)
) -> ContentResponse:
    try:
        return await service.get_content(
            user_id=request.user_id,
            test_type=request.test_type,
            section=request.section,
            difficulty=request.difficulty,
            count=request.count,
            track=request.track,
            practice_context=request.practice_context,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _lease_action(action, item_id: str, request: LeaseActionRequest) -> LeaseActionResponse:
    try:
        ok = action(item_id, request.user_id, request.lease_token)
    except UnknownItemError as exc:
        raise HTTPException(status_code=404, detail=f"Unknown item {item_id}") from exc
    if not ok:
        raise HTTPException(
            status_code=409,
            detail=f"Item {item_id} holds no lease {request.lease_token} for {request.user_id}",
        )
    return LeaseActionResponse(item_id=item_id, ok=True)


@router.post("/v1/content/{item_id}/complete", response_model=LeaseActionResponse)
def complete_content(
    item_id: str, request: LeaseActionRequest, service: ContentService = Depends(get_content_service)
) -> LeaseActionResponse:
    return _lease_action(service.complete_delivery, item_id, request)


@router.post("/v1/content/{item_id}/release", response_model=LeaseActionResponse)
def release_content(
    item_id: str, request: LeaseActionRequest, service: ContentService = Depends(get_content_service)
) -> LeaseActionResponse:
    return _lease_action(service.cancel_delivery, item_id, request)


# Learner data ---------------------------------------------------------------
@router.post("/v1/performance", response_model=PerformanceAccepted, status_code=202)
async def submit_performance(
    event: PerformanceEvent, service: ContentService = Depends(get_content_service)
) -> PerformanceAccepted:
    return PerformanceAccepted(accepted=await service.submit_performance(event))


@router.get("/v1/users/{user_id}/weaknesses", response_model=WeaknessListResponse)
def list_weaknesses(
    user_id: str,
    test_type: Optional[str] = None,
    section: Optional[str] = None,
    service: ContentService = Depends(get_content_service),
) -> WeaknessListResponse:
    return WeaknessListResponse(
        user_id=user_id, records=service.list_weaknesses(user_id, test_type, section)
    )


@router.get("/v1/users/{user_id}/deliveries", response_model=DeliveryHistoryResponse)
def delivery_history(
    user_id: str, service: ContentService = Depends(get_content_service)
) -> DeliveryHistoryResponse:
    return DeliveryHistoryResponse(user_id=user_id, deliveries=service.delivery_history(user_id))


@router.get("/v1/users/{user_id}/plan", response_model=PersonalizationMeta)
def get_plan(
    user_id: str,
    test_type: str,
    section: str,
    practice_context: str = "daily_practice",
    service: ContentService = Depends(get_content_service),
) -> PersonalizationMeta:
    try:
        return service.plan(user_id, test_type, section, practice_context)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


# Administration -------------------------------------------------------------
@router.post("/v1/admin/pool/prefill", response_model=PrefillResponse)
async def prefill_pool(
    request: PrefillRequest, service: ContentService = Depends(get_content_service)
) -> PrefillResponse:
    results = await service.prefill_pool(request.configs)
    return PrefillResponse(results=results, stats=service.pool_stats())


@router.post("/v1/admin/pool/refill", response_model=PrefillResponse)
async def refill_pool(
    request: Optional[RefillRequest] = None,
    service: ContentService = Depends(get_content_service),
) -> PrefillResponse:
    keys = None
    if request is not None and request.keys is not None:
        try:
            keys = [CategoryKey.from_label(label) for label in request.keys]
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    results = await service.refill_low_stock(keys)
    return PrefillResponse(results=results, stats=service.pool_stats())


@router.post("/v1/admin/pool/clean", response_model=CleanPoolResponse)
def clean_pool(
    request: CleanPoolRequest, service: ContentService = Depends(get_content_service)
) -> CleanPoolResponse:
    return CleanPoolResponse(**service.clean_pool(request.max_age_days))


@router.get("/v1/admin/pool/stats", response_model=PoolStatsResponse)
def pool_stats(service: ContentService = Depends(get_content_service)) -> PoolStatsResponse:
    return PoolStatsResponse(stats=service.pool_stats())


@router.post("/v1/admin/pool/sweep", response_model=SweepResponse)
def sweep_pool(service: ContentService = Depends(get_content_service)) -> SweepResponse:
    return SweepResponse(reclaimed=service.sweep())


@router.post("/v1/admin/generation/resume")
def resume_generation(service: ContentService = Depends(get_content_service)) -> dict:
    service.resume_generation()
    return {"resumed": True}


@router.get("/v1/admin/metrics")
def metrics_snapshot() -> dict:
    return METRICS.snapshot()


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


app = create_app()

__all__ = ["app", "create_app"]
