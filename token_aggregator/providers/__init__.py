"""Upstream market data providers."""

from typing import Dict, Optional

import httpx

from ..api.schemas import DataSource
from ..core.config import Settings
from .base import (
    BaseDataProvider,
    ClientError,
    InvalidPayloadError,
    ProviderError,
    RateLimitedError,
    RetriesExhaustedError,
    RetryPolicy,
    TransientError,
)
from .dexscreener_provider import DexScreenerProvider
from .geckoterminal_provider import GeckoTerminalProvider
from .rate_limiter import RateLimiter


def create_providers(
    config: Settings,
    transport: Optional[httpx.AsyncBaseTransport] = None
) -> Dict[DataSource, BaseDataProvider]:
    """Build one provider per data source, each with its own quota."""
    retry_policy = RetryPolicy(
        max_attempts=config.retry_max_attempts,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay
    )

    dexscreener = DexScreenerProvider(
        base_url=config.dexscreener_api_url,
        rate_limiter=RateLimiter(
            DataSource.DEXSCREENER.value,
            config.dexscreener_rate_limit,
            config.rate_limit_window_seconds
        ),
        retry_policy=retry_policy,
        timeout=config.request_timeout,
        transport=transport,
        network=config.network
    )
    geckoterminal = GeckoTerminalProvider(
        base_url=config.geckoterminal_api_url,
        rate_limiter=RateLimiter(
            DataSource.GECKOTERMINAL.value,
            config.geckoterminal_rate_limit,
            config.rate_limit_window_seconds
        ),
        retry_policy=retry_policy,
        timeout=config.request_timeout,
        transport=transport,
        network=config.network
    )

    return {
        DataSource.DEXSCREENER: dexscreener,
        DataSource.GECKOTERMINAL: geckoterminal,
    }


__all__ = [
    "BaseDataProvider",
    "ClientError",
    "DexScreenerProvider",
    "GeckoTerminalProvider",
    "InvalidPayloadError",
    "ProviderError",
    "RateLimitedError",
    "RateLimiter",
    "RetriesExhaustedError",
    "RetryPolicy",
    "TransientError",
    "create_providers",
]
