import asyncio

import pytest

from conftest import FIXED_NOW, FakeProvider, FakeRedis, dex_pair, gecko_token
from token_aggregator.api.schemas import DataSource
from token_aggregator.providers.base import ClientError, RetriesExhaustedError, TransientError
from token_aggregator.services.aggregator import (
    NoDataAvailableError,
    TokenAggregationService,
    TokenNotFoundError,
)
from token_aggregator.services.cache import CacheService, TokenCache
from token_aggregator.services.memory_cache import MemoryCache
from token_aggregator.services.merge import merge_token_data


def exhausted(provider: str) -> RetriesExhaustedError:
    return RetriesExhaustedError(
        "failed", provider, attempts=5,
        last_error=TransientError("HTTP 503", provider, status_code=503)
    )


def build_service(registry, redis, dex=None, gecko=None, sleep=None, chunk_size=2):
    dexscreener = FakeProvider(DataSource.DEXSCREENER, dex or {})
    geckoterminal = FakeProvider(DataSource.GECKOTERMINAL, gecko or {})
    cache = TokenCache(CacheService(default_ttl=300, client=redis), MemoryCache(clock=lambda: 0.0))

    kwargs = {}
    if sleep is not None:
        kwargs["sleep"] = sleep

    service = TokenAggregationService(
        registry,
        cache,
        {DataSource.DEXSCREENER: dexscreener, DataSource.GECKOTERMINAL: geckoterminal},
        chunk_size=chunk_size,
        chunk_delay=2.0,
        clock=lambda: FIXED_NOW,
        **kwargs
    )
    return service, dexscreener, geckoterminal


class TestAggregateToken:
    """Single-address fetch-or-serve."""

    def test_sources_match_contributing_providers(self, registry, fake_redis) -> None:
        service, _, _ = build_service(
            registry, fake_redis,
            dex={"Addr1Mint": [dex_pair(price=1.0)], "Addr2Mint": []},
            gecko={"Addr1Mint": gecko_token(price=3.0), "Addr2Mint": gecko_token(price=2.0),
                   "Addr3Mint": exhausted("geckoterminal")}
        )
        service._providers[DataSource.DEXSCREENER].responses["Addr3Mint"] = [dex_pair(price=4.0)]

        async def run():
            return (
                await service.aggregate_token("Addr1Mint"),
                await service.aggregate_token("Addr2Mint"),
                await service.aggregate_token("Addr3Mint"),
            )

        both, gecko_only, dex_only = asyncio.run(run())

        assert both.sources == [DataSource.DEXSCREENER, DataSource.GECKOTERMINAL]
        assert both.price_usd == pytest.approx(2.0)
        assert gecko_only.sources == [DataSource.GECKOTERMINAL]
        assert dex_only.sources == [DataSource.DEXSCREENER]
        assert dex_only.price_usd == 4.0

    def test_result_is_cached_in_both_tiers(self, registry, fake_redis) -> None:
        service, dex, gecko = build_service(
            registry, fake_redis,
            dex={"Addr1Mint": [dex_pair()]},
            gecko={"Addr1Mint": gecko_token()}
        )

        async def run():
            first = await service.aggregate_token("Addr1Mint")
            second = await service.aggregate_token("Addr1Mint")
            return first, second

        first, second = asyncio.run(run())

        assert first == second
        assert dex.calls == ["Addr1Mint"]
        assert gecko.calls == ["Addr1Mint"]
        assert "token:Addr1Mint" in fake_redis.store
        assert fake_redis.expirations["token:Addr1Mint"] == 300

    def test_no_data_raises_and_caches_nothing(self, registry, fake_redis) -> None:
        service, _, _ = build_service(
            registry, fake_redis,
            dex={"Addr1Mint": ClientError("HTTP 404", "dexscreener", status_code=404)},
            gecko={"Addr1Mint": exhausted("geckoterminal")}
        )

        with pytest.raises(NoDataAvailableError) as exc_info:
            asyncio.run(service.aggregate_token("Addr1Mint"))

        assert exc_info.value.address == "Addr1Mint"
        assert fake_redis.store == {}
        assert len(service.cache.memory) == 0

    def test_unknown_address(self, registry, fake_redis) -> None:
        service, dex, _ = build_service(registry, fake_redis)

        with pytest.raises(TokenNotFoundError):
            asyncio.run(service.aggregate_token("NotInRegistry"))

        assert dex.calls == []

    def test_address_lookup_is_case_insensitive(self, registry, fake_redis) -> None:
        service, _, _ = build_service(registry, fake_redis, dex={"Addr1Mint": [dex_pair()]})

        token = asyncio.run(service.aggregate_token("addr1mint"))

        assert token.address == "Addr1Mint"

    def test_concurrent_requests_share_one_fetch(self, registry, fake_redis) -> None:
        service, dex, gecko = build_service(
            registry, fake_redis,
            dex={"Addr1Mint": [dex_pair()]},
            gecko={"Addr1Mint": gecko_token()}
        )

        async def run():
            return await asyncio.gather(*(service.aggregate_token("Addr1Mint") for _ in range(3)))

        results = asyncio.run(run())

        assert len({r.price_usd for r in results}) == 1
        assert dex.calls == ["Addr1Mint"]
        assert gecko.calls == ["Addr1Mint"]

    def test_abandoned_caller_still_populates_cache(self, registry, fake_redis) -> None:
        service, _, _ = build_service(registry, fake_redis)

        async def run():
            gate = asyncio.Event()

            async def slow_pairs():
                await gate.wait()
                return [dex_pair(price=9.0)]

            service._providers[DataSource.DEXSCREENER].responses["Addr1Mint"] = slow_pairs

            caller = asyncio.create_task(service.aggregate_token("Addr1Mint"))
            await asyncio.sleep(0)
            caller.cancel()
            with pytest.raises(asyncio.CancelledError):
                await caller

            gate.set()
            for _ in range(100):
                if service.cache.memory.get("Addr1Mint") is not None:
                    break
                await asyncio.sleep(0)

            return service.cache.memory.get("Addr1Mint")

        cached = asyncio.run(run())

        assert cached is not None
        assert cached.price_usd == 9.0


class TestRefresh:
    """Cache bypass."""

    def test_refresh_fetches_again(self, registry, fake_redis) -> None:
        service, dex, _ = build_service(registry, fake_redis, dex={"Addr1Mint": [dex_pair(price=1.0)]})

        async def run():
            await service.aggregate_token("Addr1Mint")
            dex.responses["Addr1Mint"] = [dex_pair(price=1.5)]
            return await service.refresh_token("Addr1Mint")

        refreshed = asyncio.run(run())

        assert refreshed.price_usd == 1.5
        assert dex.calls == ["Addr1Mint", "Addr1Mint"]

    def test_refresh_twice_is_deterministic(self, registry, fake_redis) -> None:
        service, _, _ = build_service(
            registry, fake_redis,
            dex={"Addr1Mint": [dex_pair()]},
            gecko={"Addr1Mint": gecko_token()}
        )

        async def run():
            return await service.refresh_token("Addr1Mint"), await service.refresh_token("Addr1Mint")

        first, second = asyncio.run(run())

        assert first == second
        assert first.last_updated == FIXED_NOW

    def test_refresh_unknown_address(self, registry, fake_redis) -> None:
        service, _, _ = build_service(registry, fake_redis)

        with pytest.raises(TokenNotFoundError):
            asyncio.run(service.refresh_token("missing"))

    def test_refresh_all_clears_and_refetches(self, registry, fake_redis, fake_sleep) -> None:
        responses = {m.address: [dex_pair()] for m in registry.get_all_tokens()}
        service, dex, _ = build_service(registry, fake_redis, dex=responses, sleep=fake_sleep)

        async def run():
            await service.aggregate_all_tokens()
            return await service.refresh_all_tokens()

        tokens = asyncio.run(run())

        assert len(tokens) == 5
        assert len(dex.calls) == 10


class TestAggregateAllTokens:
    """Chunked bulk aggregation."""

    def _precache(self, service, registry, count):
        async def run():
            for metadata in registry.get_all_tokens()[:count]:
                token = merge_token_data([dex_pair(price=0.1)], None, metadata, now=FIXED_NOW)
                await service.cache.set(token)
        asyncio.run(run())

    def test_only_uncached_addresses_are_fetched(self, registry, fake_redis, fake_sleep, sleeps) -> None:
        service, dex, gecko = build_service(
            registry, fake_redis,
            dex={"Addr4Mint": [dex_pair()], "Addr5Mint": [dex_pair()]},
            sleep=fake_sleep
        )
        self._precache(service, registry, 3)

        tokens = asyncio.run(service.aggregate_all_tokens())

        assert len(tokens) == 5
        assert sorted(dex.calls) == ["Addr4Mint", "Addr5Mint"]
        assert sorted(gecko.calls) == ["Addr4Mint", "Addr5Mint"]
        # One chunk, so no inter-chunk delay
        assert sleeps == []

    def test_failed_address_is_skipped(self, registry, fake_redis, fake_sleep) -> None:
        service, _, _ = build_service(
            registry, fake_redis,
            dex={"Addr4Mint": [dex_pair()], "Addr5Mint": exhausted("dexscreener")},
            gecko={"Addr5Mint": exhausted("geckoterminal")},
            sleep=fake_sleep
        )
        self._precache(service, registry, 3)

        tokens = asyncio.run(service.aggregate_all_tokens())

        assert len(tokens) == 4
        assert "Addr5Mint" not in {t.address for t in tokens}
        assert "token:Addr5Mint" not in fake_redis.store

    def test_chunks_run_sequentially_with_delay(self, registry, fake_redis, fake_sleep, sleeps) -> None:
        responses = {m.address: [dex_pair()] for m in registry.get_all_tokens()}
        service, dex, _ = build_service(registry, fake_redis, dex=responses, sleep=fake_sleep)

        tokens = asyncio.run(service.aggregate_all_tokens())

        assert [t.address for t in tokens] == [m.address for m in registry.get_all_tokens()]
        assert dex.calls == [m.address for m in registry.get_all_tokens()]
        # 5 addresses in chunks of 2: three chunks, two delays
        assert sleeps == [2.0, 2.0]
        assert "aggregated:all" in fake_redis.store

    def test_chunk_results_are_cached_before_next_chunk(self, registry, fake_redis) -> None:
        responses = {m.address: [dex_pair()] for m in registry.get_all_tokens()}
        snapshots = []

        async def sleep(delay: float) -> None:
            snapshots.append(sorted(k for k in fake_redis.store if k.startswith("token:")))

        service, _, _ = build_service(registry, fake_redis, dex=responses, sleep=sleep)

        asyncio.run(service.aggregate_all_tokens())

        assert snapshots == [
            ["token:Addr1Mint", "token:Addr2Mint"],
            ["token:Addr1Mint", "token:Addr2Mint", "token:Addr3Mint", "token:Addr4Mint"],
        ]

    def test_cached_aggregated_list_is_served(self, registry, fake_redis, fake_sleep) -> None:
        responses = {m.address: [dex_pair()] for m in registry.get_all_tokens()}
        service, dex, _ = build_service(registry, fake_redis, dex=responses, sleep=fake_sleep)

        async def run():
            first = await service.aggregate_all_tokens()
            service.clear_memory_cache()
            second = await service.aggregate_all_tokens()
            return first, second

        first, second = asyncio.run(run())

        assert first == second
        assert len(dex.calls) == 5

    def test_all_failed_leaves_no_aggregated_list(self, registry, fake_redis, fake_sleep) -> None:
        service, _, _ = build_service(registry, fake_redis, sleep=fake_sleep)

        tokens = asyncio.run(service.aggregate_all_tokens())

        assert tokens == []
        assert fake_redis.store == {}


def test_status_helpers(registry, fake_redis) -> None:
    service, _, _ = build_service(registry, fake_redis)

    status = service.get_rate_limit_status()

    assert set(status) == {"dexscreener", "geckoterminal"}
    assert status["dexscreener"].total == 10
    assert service.get_memory_cache_stats()["size"] == 0
    assert service.clear_memory_cache() == 0


def test_initialize_and_shutdown_manage_providers(registry, fake_redis) -> None:
    service, dex, gecko = build_service(registry, fake_redis)

    async def run():
        await service.initialize()
        connected = dex.connected and gecko.connected
        await service.shutdown()
        return connected

    assert asyncio.run(run()) is True
    assert dex.connected is False
    assert gecko.connected is False


def test_requires_both_providers(registry, fake_redis) -> None:
    cache = TokenCache(CacheService(client=FakeRedis()))

    with pytest.raises(ValueError):
        TokenAggregationService(registry, cache, {DataSource.DEXSCREENER: FakeProvider(DataSource.DEXSCREENER)})
