"""
Main FastAPI application for Token Aggregator Service.
Includes lifespan management for the scheduler and service initialization.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api.endpoints import router as api_router
from .api.schemas import ErrorResponse, utcnow
from .api.websocket import router as websocket_router
from .core.config import Settings, settings
from .core.logging_config import create_logger, setup_logging
from .providers import create_providers
from .services.aggregator import AggregationError, NoDataAvailableError, TokenAggregationService
from .services.broadcaster import BroadcastService
from .services.cache import CacheService, TokenCache
from .services.memory_cache import MemoryCache
from .services.scheduler import SchedulerService
from .services.token_registry import TokenRegistry

# Setup logging first
setup_logging()
logger = create_logger(__name__)


def _error_content(message: str, error_code: str, errors: Optional[dict] = None) -> dict:
    return ErrorResponse(message=message, error_code=error_code, errors=errors).model_dump(mode="json")


def create_app(
    config: Optional[Settings] = None,
    cache_client: Optional[Any] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    registry: Optional[TokenRegistry] = None,
    start_scheduler: Optional[bool] = None
) -> FastAPI:
    """
    Build the application.

    Args:
        config: Settings to use instead of the environment-loaded ones
        cache_client: Redis-compatible client to use instead of connecting
        transport: httpx transport for the upstream providers
        registry: Preloaded token registry instead of reading ``tokens_file``
        start_scheduler: Override ``scheduler_enabled``
    """
    config = config or settings
    run_scheduler = config.scheduler_enabled if start_scheduler is None else start_scheduler

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Lifespan context manager for FastAPI application.
        Builds the services on startup and tears them down on shutdown.
        """
        # Startup
        logger.info("Starting Token Aggregator Service", extra={
            "version": config.app_version,
            "debug": config.debug
        })

        token_registry = registry or TokenRegistry()
        if not token_registry.is_ready():
            try:
                token_registry.load(config.tokens_file)
            except OSError as e:
                logger.error("Failed to load token list", extra={
                    "path": config.tokens_file,
                    "error": str(e)
                })

        cache_service = CacheService(
            config.get_redis_url(),
            default_ttl=config.token_cache_ttl,
            client=cache_client
        )
        await cache_service.connect()

        token_cache = TokenCache(
            cache_service,
            MemoryCache(config.memory_cache_ttl, config.memory_cache_max_entries)
        )

        aggregator = TokenAggregationService(
            token_registry,
            token_cache,
            create_providers(config, transport=transport),
            chain_id=config.network,
            chunk_size=config.fetch_chunk_size,
            chunk_delay=config.chunk_delay
        )
        await aggregator.initialize()

        broadcaster = BroadcastService(aggregator, registry=token_registry)
        scheduler = SchedulerService(
            aggregator,
            broadcaster,
            cache_service,
            cache_ttl=config.scheduler_cache_ttl
        )

        app.state.settings = config
        app.state.registry = token_registry
        app.state.cache_service = cache_service
        app.state.token_cache = token_cache
        app.state.aggregator = aggregator
        app.state.broadcaster = broadcaster
        app.state.scheduler = scheduler

        if run_scheduler:
            scheduler.start(config.update_interval)

        logger.info("Token Aggregator Service started successfully", extra={
            "tokens": token_registry.count(),
            "scheduler": run_scheduler
        })

        yield  # Application is running

        # Shutdown
        logger.info("Shutting down Token Aggregator Service")

        try:
            await scheduler.stop()
            await broadcaster.close()
            await aggregator.shutdown()
            await cache_service.disconnect()
            logger.info("Token Aggregator Service shutdown completed")

        except Exception as e:
            logger.error("Error during service shutdown", extra={"error": str(e)})

    app = FastAPI(
        title=config.app_name,
        description="Real-time token data aggregation from DexScreener and GeckoTerminal",
        version=config.app_version,
        docs_url="/docs" if config.debug else None,
        redoc_url="/redoc" if config.debug else None,
        openapi_url="/openapi.json" if config.debug else None,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.get_cors_origins_list(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all HTTP requests and responses."""
        start_time = time.time()

        try:
            response = await call_next(request)

            process_time = time.time() - start_time

            logger.info("Request completed", extra={
                "method": request.method,
                "url": str(request.url),
                "status_code": response.status_code,
                "process_time": round(process_time, 4),
                "client_ip": request.client.host if request.client else None
            })

            response.headers["X-Process-Time"] = str(process_time)
            return response

        except Exception as e:
            process_time = time.time() - start_time

            logger.error("Request failed", extra={
                "method": request.method,
                "url": str(request.url),
                "error": str(e),
                "process_time": round(process_time, 4),
                "client_ip": request.client.host if request.client else None
            })

            return JSONResponse(
                status_code=500,
                content=_error_content("Internal server error", "INTERNAL_ERROR")
            )

    # Exception handlers
    @app.exception_handler(AggregationError)
    async def aggregation_error_handler(request: Request, exc: AggregationError):
        """Unknown tokens and tokens without data are both 404."""
        error_code = "NO_DATA_AVAILABLE" if isinstance(exc, NoDataAvailableError) else "TOKEN_NOT_FOUND"
        return JSONResponse(
            status_code=404,
            content=_error_content(exc.message, error_code, {"address": exc.address})
        )

    @app.exception_handler(404)
    async def not_found_handler(request: Request, exc):
        """Handle 404 errors with structured response."""
        return JSONResponse(
            status_code=404,
            content=_error_content(
                "Endpoint not found",
                "NOT_FOUND",
                {"path": request.url.path, "method": request.method}
            )
        )

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        """Handle unexpected errors with structured response."""
        logger.error("Internal server error", extra={
            "path": request.url.path,
            "method": request.method,
            "error": str(exc)
        })
        return JSONResponse(
            status_code=500,
            content=_error_content("Internal server error", "INTERNAL_ERROR")
        )

    app.include_router(api_router, prefix="/api", tags=["Token Aggregator API"])
    app.include_router(websocket_router)

    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint with service information."""
        return {
            "service": config.app_name,
            "version": config.app_version,
            "status": "running",
            "docs_url": "/docs" if config.debug else "disabled",
            "timestamp": utcnow()
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "token_aggregator.main:app",
        host=settings.server_host,
        port=settings.server_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        access_log=True
    )
