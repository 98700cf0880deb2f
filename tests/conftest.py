"""Pytest configuration and shared fakes."""

import asyncio
import fnmatch
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from token_aggregator.api.schemas import DataSource, RateLimitStatus, TokenMetadata
from token_aggregator.services.token_registry import TokenRegistry

FIXED_NOW = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self._redis = redis
        self._ops: List[tuple] = []

    def setex(self, key: str, ttl: int, value: Any) -> "FakePipeline":
        self._ops.append((key, ttl, value))
        return self

    async def execute(self) -> List[bool]:
        for key, ttl, value in self._ops:
            await self._redis.setex(key, ttl, value)
        results = [True] * len(self._ops)
        self._ops = []
        return results


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis with decode_responses=True."""

    def __init__(self) -> None:
        self.store: Dict[str, str] = {}
        self.expirations: Dict[str, int] = {}
        self.closed = False

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.store.get(key)

    async def setex(self, key: str, ttl: int, value: Any) -> bool:
        if isinstance(value, bytes):
            value = value.decode()
        self.store[key] = value
        self.expirations[key] = ttl
        return True

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        return [self.store.get(key) for key in keys]

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                self.expirations.pop(key, None)
                removed += 1
        return removed

    async def exists(self, key: str) -> int:
        return 1 if key in self.store else 0

    async def ttl(self, key: str) -> int:
        if key not in self.store:
            return -2
        return self.expirations.get(key, -1)

    async def keys(self, pattern: str) -> List[str]:
        return [key for key in self.store if fnmatch.fnmatchcase(key, pattern)]

    async def info(self, section: str = "default") -> Dict[str, Any]:
        return {"used_memory_human": "1.00M"}

    def pipeline(self) -> FakePipeline:
        return FakePipeline(self)

    async def aclose(self) -> None:
        self.closed = True


class BrokenRedis:
    """Every command fails as if the server went away."""

    def __getattr__(self, name: str):
        async def _fail(*args, **kwargs):
            raise ConnectionError("Connection refused")
        return _fail

    def pipeline(self):
        raise ConnectionError("Connection refused")


class FakeProvider:
    """Scripted provider: returns queued results, or raises queued exceptions."""

    def __init__(self, source: DataSource, responses: Optional[Dict[str, Any]] = None) -> None:
        self.source = source
        self.name = source.value
        self.responses: Dict[str, Any] = responses or {}
        self.calls: List[str] = []
        self.connected = False

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def fetch(self, address: str) -> Any:
        self.calls.append(address)
        result = self.responses.get(address)
        if isinstance(result, Exception):
            raise result
        if callable(result):
            result = result()
            if asyncio.iscoroutine(result):
                result = await result
        return result

    def rate_limit_status(self) -> RateLimitStatus:
        return RateLimitStatus(remaining=10, total=10, reset_time=FIXED_NOW)


def dex_pair(price: float = 1.0, volume_h24: float = 1000.0, **overrides: Any) -> Dict[str, Any]:
    """DexScreener pair record."""
    pair = {
        "chainId": "solana",
        "dexId": "raydium",
        "pairAddress": "PAIR111",
        "priceNative": "0.0005",
        "priceUsd": str(price),
        "txns": {
            "h1": {"buys": 10, "sells": 5},
            "h6": {"buys": 60, "sells": 40},
            "h24": {"buys": 200, "sells": 150},
        },
        "volume": {"h1": volume_h24 / 24, "h6": volume_h24 / 4, "h24": volume_h24},
        "priceChange": {"h1": 1.5, "h6": -2.0, "h24": 5.0},
        "fdv": 90000000,
        "marketCap": 85000000,
    }
    pair.update(overrides)
    return pair


def gecko_token(price: float = 1.0, liquidity: float = 50000.0, volume_h24: float = 1000.0,
                pools: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """GeckoTerminal token record with included pools."""
    if pools is None:
        pools = [{
            "id": "solana_POOL111",
            "type": "pool",
            "attributes": {
                "address": "POOL111",
                "base_token_price_native_currency": "0.0004",
                "volume_usd": {"h1": str(volume_h24 / 24), "h6": str(volume_h24 / 4), "h24": str(volume_h24)},
                "transactions": {"h1": {"buys": 1, "sells": 1}},
            },
        }]
    return {
        "data": {
            "id": "solana_TOKEN",
            "type": "token",
            "attributes": {
                "price_usd": str(price),
                "fdv_usd": "88000000",
                "market_cap_usd": None,
                "total_reserve_in_usd": str(liquidity),
                "volume_usd": {"h24": str(volume_h24)},
            },
        },
        "included": pools,
    }


def make_metadata(count: int) -> List[TokenMetadata]:
    return [
        TokenMetadata(address=f"Addr{i}Mint", name=f"Token {i}", symbol=f"TK{i}")
        for i in range(1, count + 1)
    ]


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def registry() -> TokenRegistry:
    return TokenRegistry(make_metadata(5))


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(delay: float) -> None:
        sleeps.append(delay)
    return _sleep
