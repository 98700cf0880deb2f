"""
FastAPI endpoints for Token Aggregator Service.
Serves aggregated token data, cache controls and scheduler status.
"""

from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query

from ..api.dependencies import (
    get_aggregator, get_broadcaster, get_registry, get_scheduler, get_settings, get_token_cache
)
from ..api.schemas import ApiResponse, HealthResponse, SortField, TimePeriod
from ..core.config import Settings
from ..core.logging_config import create_logger
from ..services.aggregator import TokenAggregationService
from ..services.broadcaster import BroadcastService
from ..services.cache import TokenCache
from ..services.scheduler import SchedulerService
from ..services.token_query import MAX_PAGE_SIZE, TokenFilters, query_tokens
from ..services.token_registry import TokenRegistry

logger = create_logger(__name__)

# Create API router
router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(
    settings: Settings = Depends(get_settings),
    token_cache: TokenCache = Depends(get_token_cache),
    scheduler: SchedulerService = Depends(get_scheduler),
    registry: TokenRegistry = Depends(get_registry)
):
    """
    Health check endpoint.
    Reports Redis connectivity, scheduler state and token registry state.
    """
    redis_healthy = await token_cache.durable.health_check()
    tokens_loaded = registry.is_ready()

    return HealthResponse(
        status="healthy" if redis_healthy and tokens_loaded else "degraded",
        version=settings.app_version,
        redis_connected=redis_healthy,
        scheduler_running=scheduler.is_active(),
        tokens_loaded=tokens_loaded,
        token_count=registry.count()
    )


@router.get("/tokens")
async def get_tokens(
    time_period: TimePeriod = Query(TimePeriod.H24, description="Window for volume / price change"),
    sort_by: SortField = Query(SortField.VOLUME, description="Field to sort by"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    cursor: Optional[str] = Query(None, description="Start index returned as next_cursor"),
    min_volume: Optional[float] = Query(None, ge=0),
    min_price_change: Optional[float] = Query(None),
    min_market_cap: Optional[float] = Query(None, ge=0),
    min_liquidity: Optional[float] = Query(None, ge=0),
    aggregator: TokenAggregationService = Depends(get_aggregator)
):
    """
    Get all tracked tokens with filtering, sorting and cursor pagination.

    Tokens missing from cache are fetched upstream; tokens no provider can
    serve are left out.
    """
    filters = TokenFilters(
        time_period=time_period,
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        cursor=cursor,
        min_volume=min_volume,
        min_price_change=min_price_change,
        min_market_cap=min_market_cap,
        min_liquidity=min_liquidity
    )

    tokens = await aggregator.aggregate_all_tokens()
    page = query_tokens(tokens, filters)

    logger.info("Tokens request served", extra={
        "total": page.pagination.total,
        "returned": len(page.data),
        "sort_by": sort_by.value,
        "time_period": time_period.value
    })

    return ApiResponse(message="Tokens retrieved successfully", data=page)


@router.get("/tokens/available")
async def get_available_tokens(registry: TokenRegistry = Depends(get_registry)):
    """List every token in the registry."""
    tokens = registry.get_all_tokens()
    return ApiResponse(
        message="Available tokens retrieved successfully",
        data={"tokens": tokens, "count": len(tokens)}
    )


@router.post("/tokens/refresh")
async def refresh_all_tokens(aggregator: TokenAggregationService = Depends(get_aggregator)):
    """Drop every cache entry and aggregate all tokens again."""
    tokens = await aggregator.refresh_all_tokens()
    return ApiResponse(
        message="All tokens refreshed successfully",
        data={"count": len(tokens)}
    )


@router.get("/tokens/{address}")
async def get_token(address: str, aggregator: TokenAggregationService = Depends(get_aggregator)):
    """
    Get one token.

    Raises AggregationError (mapped to 404) when the address is unknown or no
    provider returned data.
    """
    token = await aggregator.aggregate_token(address)
    return ApiResponse(message="Token retrieved successfully", data=token)


@router.post("/tokens/{address}/refresh")
async def refresh_token(address: str, aggregator: TokenAggregationService = Depends(get_aggregator)):
    token = await aggregator.refresh_token(address)
    return ApiResponse(message="Token refreshed successfully", data=token)


@router.get("/cache/stats")
async def get_cache_stats(
    token_cache: TokenCache = Depends(get_token_cache),
    broadcaster: BroadcastService = Depends(get_broadcaster)
):
    stats = await token_cache.stats()
    stats["websocket_clients"] = broadcaster.get_connected_clients_count()
    return ApiResponse(message="Cache statistics retrieved successfully", data=stats)


@router.delete("/cache")
async def clear_cache(token_cache: TokenCache = Depends(get_token_cache)):
    cleared = await token_cache.invalidate_all()
    logger.info("Cache cleared via API", extra=cleared)
    return ApiResponse(message="Cache cleared successfully", data=cleared)


@router.get("/rate-limit")
async def get_rate_limit_status(aggregator: TokenAggregationService = Depends(get_aggregator)):
    return ApiResponse(
        message="Rate limit status retrieved successfully",
        data=aggregator.get_rate_limit_status()
    )


@router.get("/scheduler/status")
async def get_scheduler_status(scheduler: SchedulerService = Depends(get_scheduler)):
    return ApiResponse(message="Scheduler status retrieved successfully", data=scheduler.status())


@router.post("/scheduler/trigger", status_code=202)
async def trigger_scheduler_update(
    background_tasks: BackgroundTasks,
    scheduler: SchedulerService = Depends(get_scheduler)
):
    """Run one update out of schedule, after the response is sent."""
    background_tasks.add_task(scheduler.trigger_manual_update)
    return ApiResponse(message="Manual update triggered")
