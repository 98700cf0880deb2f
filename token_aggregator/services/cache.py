"""
Redis cache service and the two-tier token cache for Token Aggregator.
Redis is the shared durable tier; a MemoryCache fronts it per process.
"""

import asyncio
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from pydantic import TypeAdapter, ValidationError
from redis.asyncio.connection import ConnectionPool

from ..api.schemas import TokenData
from ..core.config import cache_keys
from ..core.logging_config import create_logger
from .memory_cache import MemoryCache

logger = create_logger(__name__)

_token_list_adapter = TypeAdapter(List[TokenData])


class CacheService:
    """Redis-backed durable cache tier.

    Every Redis failure is logged and turned into a miss (reads) or a no-op
    (writes), so the aggregator keeps serving from upstream when Redis is down.
    """

    def __init__(self, redis_url: Optional[str] = None, default_ttl: int = 300,
                 client: Optional[Any] = None):
        self._redis_url = redis_url
        self._pool: Optional[ConnectionPool] = None
        self._redis: Optional[Any] = client
        self._connection_lock = asyncio.Lock()
        self._default_ttl = default_ttl

    async def connect(self) -> None:
        """Initialize Redis connection pool."""
        async with self._connection_lock:
            if self._redis is not None:
                return
            try:
                self._pool = ConnectionPool.from_url(
                    self._redis_url,
                    max_connections=20,
                    decode_responses=True,
                    retry_on_timeout=True,
                    socket_keepalive=True,
                    health_check_interval=30
                )
                self._redis = redis.Redis(connection_pool=self._pool)

                # Test connection
                await self._redis.ping()
                logger.info("Successfully connected to Redis")

            except Exception as e:
                # The service keeps running without the durable tier
                logger.error("Failed to connect to Redis", extra={"error": str(e)})

    async def disconnect(self) -> None:
        """Close Redis connection."""
        async with self._connection_lock:
            if self._redis is not None and self._pool is not None:
                await self._redis.aclose()
                await self._pool.disconnect()
            self._redis = None
            self._pool = None
            logger.info("Disconnected from Redis")

    async def health_check(self) -> bool:
        """Check Redis connection health."""
        try:
            if self._redis is None:
                return False
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning("Redis health check failed", extra={"error": str(e)})
            return False

    def _client(self) -> Any:
        if self._redis is None:
            raise ConnectionError("Redis is not connected")
        return self._redis

    # TTL Methods

    def set_default_ttl(self, ttl: int) -> None:
        """Set the TTL used when callers do not pass one."""
        self._default_ttl = ttl
        logger.info("Durable cache default TTL updated", extra={"ttl": ttl})

    def get_default_ttl(self) -> int:
        return self._default_ttl

    @staticmethod
    def _token_key(address: str) -> str:
        return cache_keys.TOKEN.format(address=address)

    # Token Caching Methods

    async def get_token(self, address: str) -> Optional[TokenData]:
        """Get one token record from cache."""
        try:
            value = await self._client().get(self._token_key(address))

            if not value:
                logger.debug("Durable cache miss", extra={"address": address})
                return None

            logger.debug("Durable cache hit", extra={"address": address})
            return TokenData.model_validate_json(value)

        except ValidationError as e:
            logger.warning("Failed to deserialize token from cache", extra={
                "address": address,
                "error": str(e)
            })
            return None

        except Exception as e:
            logger.error("Failed to get token from cache", extra={
                "address": address,
                "error": str(e)
            })
            return None

    async def set_token(self, address: str, token: TokenData, ttl: Optional[int] = None) -> None:
        """Store one token record with TTL."""
        expiry = ttl or self._default_ttl
        try:
            await self._client().setex(self._token_key(address), expiry, token.model_dump_json())

            logger.debug("Stored token in cache", extra={
                "address": address,
                "ttl": expiry
            })

        except Exception as e:
            logger.error("Failed to store token in cache", extra={
                "address": address,
                "error": str(e)
            })

    async def get_tokens(self, addresses: List[str]) -> Dict[str, TokenData]:
        """Get several token records with a single multi-get."""
        results: Dict[str, TokenData] = {}
        if not addresses:
            return results

        try:
            keys = [self._token_key(address) for address in addresses]
            values = await self._client().mget(keys)

            for address, value in zip(addresses, values):
                if not value:
                    continue
                try:
                    results[address] = TokenData.model_validate_json(value)
                except ValidationError as e:
                    logger.warning("Failed to deserialize token from cache", extra={
                        "address": address,
                        "error": str(e)
                    })

            logger.debug("Retrieved tokens from cache", extra={
                "requested": len(addresses),
                "hits": len(results)
            })

        except Exception as e:
            logger.error("Failed to get tokens from cache", extra={
                "count": len(addresses),
                "error": str(e)
            })

        return results

    async def set_tokens(self, tokens: List[TokenData], ttl: Optional[int] = None) -> None:
        """Store several token records in one pipeline."""
        if not tokens:
            return

        expiry = ttl or self._default_ttl
        try:
            pipe = self._client().pipeline()
            for token in tokens:
                pipe.setex(self._token_key(token.address), expiry, token.model_dump_json())
            await pipe.execute()

            logger.debug("Stored tokens in cache", extra={
                "count": len(tokens),
                "ttl": expiry
            })

        except Exception as e:
            logger.error("Failed to store tokens in cache", extra={
                "count": len(tokens),
                "error": str(e)
            })

    async def delete_token(self, address: str) -> None:
        """Remove one token record."""
        try:
            removed = await self._client().delete(self._token_key(address))
            logger.debug("Deleted token from cache", extra={
                "address": address,
                "removed": removed
            })
        except Exception as e:
            logger.error("Failed to delete token from cache", extra={
                "address": address,
                "error": str(e)
            })

    async def delete_tokens(self, addresses: List[str]) -> None:
        """Remove several token records."""
        if not addresses:
            return
        try:
            keys = [self._token_key(address) for address in addresses]
            removed = await self._client().delete(*keys)
            logger.debug("Deleted tokens from cache", extra={"removed": removed})
        except Exception as e:
            logger.error("Failed to delete tokens from cache", extra={
                "count": len(addresses),
                "error": str(e)
            })

    async def has_token(self, address: str) -> bool:
        try:
            return bool(await self._client().exists(self._token_key(address)))
        except Exception as e:
            logger.error("Failed to check token in cache", extra={
                "address": address,
                "error": str(e)
            })
            return False

    async def get_token_ttl(self, address: str) -> int:
        """Remaining TTL in seconds; -2 when missing, -1 when unknown or without expiry."""
        try:
            return int(await self._client().ttl(self._token_key(address)))
        except Exception as e:
            logger.error("Failed to get token TTL", extra={
                "address": address,
                "error": str(e)
            })
            return -1

    # Aggregated List Methods

    async def get_aggregated_tokens(self) -> Optional[List[TokenData]]:
        """Get the full aggregated list, or None when it is not cached."""
        try:
            value = await self._client().get(cache_keys.AGGREGATED)
            if not value:
                logger.debug("Aggregated list cache miss")
                return None

            tokens = _token_list_adapter.validate_json(value)
            logger.debug("Aggregated list cache hit", extra={"count": len(tokens)})
            return tokens

        except Exception as e:
            logger.error("Failed to get aggregated tokens from cache", extra={"error": str(e)})
            return None

    async def set_aggregated_tokens(self, tokens: List[TokenData], ttl: Optional[int] = None) -> None:
        """Store the full aggregated list."""
        expiry = ttl or self._default_ttl
        try:
            await self._client().setex(
                cache_keys.AGGREGATED,
                expiry,
                _token_list_adapter.dump_json(tokens)
            )
            logger.debug("Stored aggregated list in cache", extra={
                "count": len(tokens),
                "ttl": expiry
            })
        except Exception as e:
            logger.error("Failed to store aggregated tokens in cache", extra={
                "count": len(tokens),
                "error": str(e)
            })

    async def delete_aggregated_tokens(self) -> None:
        try:
            await self._client().delete(cache_keys.AGGREGATED)
        except Exception as e:
            logger.error("Failed to delete aggregated tokens from cache", extra={"error": str(e)})

    # Utility Methods

    async def clear_all(self) -> int:
        """Delete every token and aggregated-list key. Returns the number of keys removed."""
        try:
            client = self._client()
            token_keys = await client.keys(cache_keys.TOKEN_PATTERN)
            aggregated_keys = await client.keys(cache_keys.AGGREGATED_PATTERN)
            all_keys = list(token_keys) + list(aggregated_keys)

            if not all_keys:
                logger.info("No cache entries to clear")
                return 0

            await client.delete(*all_keys)
            logger.info("Cleared cache entries", extra={
                "tokens": len(token_keys),
                "aggregated": len(aggregated_keys)
            })
            return len(all_keys)

        except Exception as e:
            logger.error("Failed to clear cache", extra={"error": str(e)})
            return 0

    async def get_stats(self) -> Dict[str, Any]:
        """Key counts per entity kind and Redis memory usage."""
        try:
            client = self._client()
            token_keys = await client.keys(cache_keys.TOKEN_PATTERN)
            aggregated_keys = await client.keys(cache_keys.AGGREGATED_PATTERN)
            info = await client.info('memory')

            return {
                "token_count": len(token_keys),
                "aggregated_count": len(aggregated_keys),
                "memory_usage": info.get('used_memory_human') if info else None
            }

        except Exception as e:
            logger.error("Failed to get cache stats", extra={"error": str(e)})
            return {
                "token_count": 0,
                "aggregated_count": 0,
                "memory_usage": None
            }


class TokenCache:
    """Two-tier token cache: in-process MemoryCache in front of Redis.

    Reads try memory, then Redis, and a Redis hit repopulates memory. Writes
    always go to both tiers, each with its own TTL.
    """

    def __init__(self, durable: CacheService, memory: Optional[MemoryCache] = None):
        self.durable = durable
        self.memory: MemoryCache = memory if memory is not None else MemoryCache()

    async def get(self, address: str) -> Optional[TokenData]:
        token = self.memory.get(address)
        if token is not None:
            logger.debug("Memory cache hit", extra={"address": address})
            return token

        token = await self.durable.get_token(address)
        if token is not None:
            self.memory.set(address, token)
        return token

    async def set(self, token: TokenData, ttl: Optional[int] = None) -> None:
        self.memory.set(token.address, token)
        await self.durable.set_token(token.address, token, ttl)

    async def invalidate(self, address: str) -> None:
        """Drop one token from both tiers."""
        self.memory.delete(address)
        await self.durable.delete_token(address)

    async def invalidate_all(self) -> Dict[str, int]:
        """Drop every token and the aggregated list from both tiers."""
        memory_cleared = self.memory.clear()
        durable_cleared = await self.durable.clear_all()
        return {"memory": memory_cleared, "durable": durable_cleared}

    async def get_aggregated(self) -> Optional[List[TokenData]]:
        return await self.durable.get_aggregated_tokens()

    async def set_aggregated(self, tokens: List[TokenData], ttl: Optional[int] = None) -> None:
        await self.durable.set_aggregated_tokens(tokens, ttl)

    async def invalidate_aggregated(self) -> None:
        await self.durable.delete_aggregated_tokens()

    async def stats(self) -> Dict[str, Any]:
        durable_stats = await self.durable.get_stats()
        return {
            **durable_stats,
            "default_ttl": self.durable.get_default_ttl(),
            "memory": self.memory.stats()
        }
