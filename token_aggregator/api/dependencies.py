"""
FastAPI dependencies resolving the services built in the application lifespan.
"""

from fastapi import Request

from ..core.config import Settings
from ..services.aggregator import TokenAggregationService
from ..services.broadcaster import BroadcastService
from ..services.cache import TokenCache
from ..services.scheduler import SchedulerService
from ..services.token_registry import TokenRegistry


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_aggregator(request: Request) -> TokenAggregationService:
    return request.app.state.aggregator


def get_token_cache(request: Request) -> TokenCache:
    return request.app.state.token_cache


def get_registry(request: Request) -> TokenRegistry:
    return request.app.state.registry


def get_scheduler(request: Request) -> SchedulerService:
    return request.app.state.scheduler


def get_broadcaster(request: Request) -> BroadcastService:
    return request.app.state.broadcaster
