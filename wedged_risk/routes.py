from fastapi import APIRouter, HTTPException, Path, Query, Request
from typing import List, Optional
import structlog
import time

from .cache import CacheCategory
from .models import (
    CacheStatsResponse, MarketConditions, PortfolioRisk, Recommendation, RiskHistoryResponse,
    RiskSnapshot, ServiceHealth, Timeframe
)
from .risk_engine import RiskEngine

logger = structlog.get_logger()

router = APIRouter()

ADDRESS_PATTERN = r"^0x[a-fA-F0-9]{40}$"


def get_engine(request: Request) -> RiskEngine:
    return request.app.state.risk_engine


def request_timeout(request: Request) -> Optional[float]:
    return request.app.state.settings.REQUEST_TIMEOUT_SECONDS


@router.get("/api/risk/health", response_model=ServiceHealth)
async def health_check(request: Request):
    """Service liveness plus chain reader and sweep state"""
    engine = get_engine(request)
    background = request.app.state.background_tasks

    return ServiceHealth(
        uptime_seconds=int(time.time() - request.app.state.started_at),
        background_tasks_running=background.is_running if background else False,
        chain_reader=engine.health()["chain_reader"]
    )


@router.get("/api/pools/{pool_id}/risk", response_model=RiskSnapshot)
async def get_pool_risk(request: Request, pool_id: int = Path(..., ge=1)):
    return await get_engine(request).get_pool_risk(pool_id, timeout=request_timeout(request))


@router.get("/api/pools/{pool_id}/risk/history", response_model=RiskHistoryResponse)
async def get_pool_risk_history(
    request: Request,
    pool_id: int = Path(..., ge=1),
    timeframe: Timeframe = Query(Timeframe.H24)
):
    points = await get_engine(request).get_pool_risk_history(
        pool_id, timeframe, timeout=request_timeout(request)
    )
    return RiskHistoryResponse(pool_id=pool_id, timeframe=timeframe, points=points)


@router.get("/api/pools/{pool_id}/recommendations", response_model=List[Recommendation])
async def get_recommendations(request: Request, pool_id: int = Path(..., ge=1)):
    return await get_engine(request).get_recommendations(pool_id, timeout=request_timeout(request))


@router.get("/api/users/{user}/portfolio/risk", response_model=PortfolioRisk)
async def get_portfolio_risk(request: Request, user: str = Path(..., pattern=ADDRESS_PATTERN)):
    return await get_engine(request).get_portfolio_risk(user, timeout=request_timeout(request))


@router.get("/api/market/conditions", response_model=MarketConditions)
async def get_market_conditions(request: Request):
    return get_engine(request).get_market_conditions()


@router.get("/api/cache/stats", response_model=CacheStatsResponse)
async def get_cache_stats(request: Request):
    return get_engine(request).cache_stats()


@router.delete("/api/cache")
async def clear_cache(request: Request):
    get_engine(request).clear_cache()
    return {"cleared": True}


@router.post("/api/cache/invalidate")
async def invalidate_cache(
    request: Request,
    pool_id: Optional[int] = Query(None, ge=1),
    user: Optional[str] = Query(None, pattern=ADDRESS_PATTERN),
    category: Optional[CacheCategory] = Query(None)
):
    """Drop cached data for a pool, a user or a whole category after a state-changing action"""
    if pool_id is None and user is None and category is None:
        raise HTTPException(status_code=400, detail="Provide pool_id, user or category")

    engine = get_engine(request)
    removed = 0
    if pool_id is not None:
        removed += engine.invalidate_pool(pool_id)
    if user is not None:
        removed += engine.invalidate_user(user)
    if category is not None:
        removed += engine.invalidate_category(category)

    logger.info("Cache invalidated via API", pool_id=pool_id, user=user, category=category, removed=removed)
    return {"removed": removed}
