"""
Token aggregation service for Token Aggregator.
Coordinates cache lookups, upstream fan-out, merging and cache population.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from ..api.schemas import DataSource, RateLimitStatus, TokenData, TokenMetadata, utcnow
from ..core.logging_config import create_logger
from ..providers.base import BaseDataProvider, ProviderError
from .cache import TokenCache
from .merge import merge_token_data
from .token_registry import TokenRegistry

logger = create_logger(__name__)


class AggregationError(Exception):
    """Base exception for aggregation failures visible to callers."""

    def __init__(self, message: str, address: str):
        self.message = message
        self.address = address
        super().__init__(self.message)


class TokenNotFoundError(AggregationError):
    """The address is not in the token registry."""
    pass


class NoDataAvailableError(AggregationError):
    """No provider returned data for the address."""
    pass


@dataclass
class SourceFetchResult:
    """Raw payloads for one address, with the errors of providers that failed."""

    address: str
    dexscreener_pairs: List[dict] = field(default_factory=list)
    geckoterminal_token: Optional[dict] = None
    errors: Dict[DataSource, Exception] = field(default_factory=dict)


class TokenAggregationService:
    """Service that aggregates token data from DexScreener and GeckoTerminal."""

    def __init__(
        self,
        registry: TokenRegistry,
        cache: TokenCache,
        providers: Dict[DataSource, BaseDataProvider],
        chain_id: str = "solana",
        chunk_size: int = 2,
        chunk_delay: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        missing = set(DataSource) - set(providers)
        if missing:
            raise ValueError(f"Missing providers: {', '.join(sorted(s.value for s in missing))}")

        self._registry = registry
        self._cache = cache
        self._providers = providers
        self._chain_id = chain_id
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self._sleep = sleep
        self._clock = clock
        self._inflight: Dict[str, asyncio.Task] = {}
        self._last_bulk_update: Optional[datetime] = None

    @property
    def cache(self) -> TokenCache:
        return self._cache

    @property
    def registry(self) -> TokenRegistry:
        return self._registry

    async def initialize(self) -> None:
        """Open provider connections."""
        logger.info("Initializing token aggregation service")
        for provider in self._providers.values():
            await provider.connect()
        logger.info("Token aggregation service initialized", extra={
            "providers": [source.value for source in self._providers],
            "tokens": self._registry.count()
        })

    async def shutdown(self) -> None:
        """Wait for in-flight fetches and close provider connections."""
        logger.info("Shutting down token aggregation service")

        pending = [task for task in self._inflight.values() if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        for provider in self._providers.values():
            try:
                await provider.disconnect()
            except Exception as e:
                logger.warning("Error disconnecting provider", extra={
                    "provider": provider.name,
                    "error": str(e)
                })

        logger.info("Token aggregation service shutdown complete")

    # Upstream Fan-out

    async def _fetch_sources(self, address: str) -> SourceFetchResult:
        """Fetch both providers concurrently. Provider failures are recorded, not raised."""
        dexscreener = self._providers[DataSource.DEXSCREENER]
        geckoterminal = self._providers[DataSource.GECKOTERMINAL]

        dex_result, gecko_result = await asyncio.gather(
            dexscreener.fetch(address),
            geckoterminal.fetch(address),
            return_exceptions=True
        )

        result = SourceFetchResult(address=address)

        for source, outcome in ((DataSource.DEXSCREENER, dex_result),
                                (DataSource.GECKOTERMINAL, gecko_result)):
            if isinstance(outcome, ProviderError):
                logger.warning("Provider failed for token", extra={
                    "address": address,
                    "provider": source.value,
                    "error": str(outcome)
                })
                result.errors[source] = outcome
            elif isinstance(outcome, Exception):
                logger.error("Unexpected provider error for token", extra={
                    "address": address,
                    "provider": source.value,
                    "error": f"{outcome.__class__.__name__}: {outcome}"
                })
                result.errors[source] = outcome
            elif isinstance(outcome, BaseException):
                raise outcome
            elif source is DataSource.DEXSCREENER:
                result.dexscreener_pairs = outcome or []
            else:
                result.geckoterminal_token = outcome

        logger.debug("Fetched provider data", extra={
            "address": address,
            "dexscreener_pairs": len(result.dexscreener_pairs),
            "geckoterminal": result.geckoterminal_token is not None
        })
        return result

    def _merge(self, metadata: TokenMetadata, fetched: SourceFetchResult) -> Optional[TokenData]:
        return merge_token_data(
            fetched.dexscreener_pairs,
            fetched.geckoterminal_token,
            metadata,
            default_chain=self._chain_id,
            now=self._clock()
        )

    async def _fetch_and_store(self, metadata: TokenMetadata) -> Optional[TokenData]:
        fetched = await self._fetch_sources(metadata.address)
        token = self._merge(metadata, fetched)

        if token is None:
            logger.error("No data available from any source", extra={
                "address": metadata.address,
                "symbol": metadata.symbol
            })
            return None

        await self._cache.set(token)
        logger.info("Aggregated token", extra={
            "address": metadata.address,
            "symbol": metadata.symbol,
            "price_usd": token.price_usd,
            "sources": [source.value for source in token.sources]
        })
        return token

    async def _fetch_shielded(self, metadata: TokenMetadata, force: bool = False) -> Optional[TokenData]:
        """Run one fetch per address at a time; callers that go away do not cancel it."""
        key = metadata.address
        task = self._inflight.get(key)

        if task is None or force:
            task = asyncio.ensure_future(self._fetch_and_store(metadata))
            self._inflight[key] = task

            def _release(done: asyncio.Task, key: str = key) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(_release)

        return await asyncio.shield(task)

    # Single Token

    def _resolve(self, address: str) -> TokenMetadata:
        metadata = self._registry.get_token(address)
        if metadata is None:
            logger.warning("Token not found in registry", extra={"address": address})
            raise TokenNotFoundError(f"Token {address} not found", address)
        return metadata

    async def aggregate_token(self, address: str) -> TokenData:
        """
        Serve one token from cache, or fetch, merge and cache it.

        Raises:
            TokenNotFoundError: If the address is unknown
            NoDataAvailableError: If no provider returned data
        """
        metadata = self._resolve(address)

        cached = await self._cache.get(metadata.address)
        if cached is not None:
            return cached

        logger.debug("Cache miss, fetching token", extra={"address": metadata.address})
        token = await self._fetch_shielded(metadata)
        if token is None:
            raise NoDataAvailableError(f"No data available for token {metadata.address}", metadata.address)
        return token

    async def refresh_token(self, address: str) -> TokenData:
        """Bypass both cache tiers and fetch one token again."""
        metadata = self._resolve(address)
        logger.info("Refreshing token", extra={"address": metadata.address})

        await self._cache.invalidate(metadata.address)
        await self._cache.invalidate_aggregated()

        token = await self._fetch_shielded(metadata, force=True)
        if token is None:
            raise NoDataAvailableError(f"No data available for token {metadata.address}", metadata.address)
        return token

    # All Tokens

    async def aggregate_all_tokens(self) -> List[TokenData]:
        """
        Serve every registry token, fetching only the ones missing from cache.

        Misses are fetched in sequential chunks. Each chunk is cached as soon
        as it completes, and the aggregated list is rewritten with everything
        gathered so far. Tokens no provider can serve are skipped.
        """
        cached_list = await self._cache.get_aggregated()
        if cached_list is not None:
            logger.debug("Using cached aggregated list", extra={"count": len(cached_list)})
            return cached_list

        all_tokens = self._registry.get_all_tokens()
        results: List[TokenData] = []
        uncached: List[TokenMetadata] = []

        for metadata in all_tokens:
            cached = await self._cache.get(metadata.address)
            if cached is not None:
                results.append(cached)
            else:
                uncached.append(metadata)

        logger.info("Checked token caches", extra={
            "total": len(all_tokens),
            "cached": len(results),
            "uncached": len(uncached)
        })

        if not uncached:
            if results:
                await self._cache.set_aggregated(results)
            self._last_bulk_update = self._clock()
            return results

        chunks = [uncached[i:i + self.chunk_size] for i in range(0, len(uncached), self.chunk_size)]
        success_count = 0
        fail_count = 0

        for index, chunk in enumerate(chunks):
            logger.debug("Processing chunk", extra={
                "chunk": index + 1,
                "chunks": len(chunks),
                "size": len(chunk)
            })

            fetched = await asyncio.gather(*(self._fetch_sources(m.address) for m in chunk))

            for metadata, fetch_result in zip(chunk, fetched):
                try:
                    token = self._merge(metadata, fetch_result)
                except Exception as e:
                    logger.error("Failed to merge token data", extra={
                        "address": metadata.address,
                        "error": str(e)
                    })
                    fail_count += 1
                    continue

                if token is None:
                    logger.warning("No data from any source, skipping token", extra={
                        "address": metadata.address,
                        "symbol": metadata.symbol
                    })
                    fail_count += 1
                    continue

                await self._cache.set(token)
                results.append(token)
                success_count += 1

            # Progressive caching survives an aborted run
            if results:
                await self._cache.set_aggregated(results)

            if index < len(chunks) - 1:
                await self._sleep(self.chunk_delay)

        self._last_bulk_update = self._clock()
        logger.info("Aggregated all tokens", extra={
            "total": len(results),
            "fetched": success_count,
            "failed": fail_count
        })
        return results

    async def refresh_all_tokens(self) -> List[TokenData]:
        """Clear both cache tiers and aggregate every token again."""
        logger.info("Refreshing all tokens")
        await self._cache.invalidate_all()
        return await self.aggregate_all_tokens()

    # Status Methods

    def get_rate_limit_status(self) -> Dict[str, RateLimitStatus]:
        return {
            source.value: provider.rate_limit_status()
            for source, provider in self._providers.items()
        }

    def get_memory_cache_stats(self) -> Dict[str, object]:
        return self._cache.memory.stats()

    def clear_memory_cache(self) -> int:
        return self._cache.memory.clear()

    def get_last_bulk_update(self) -> Optional[datetime]:
        return self._last_bulk_update
