from token_aggregator.services.memory_cache import MemoryCache


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestMemoryCache:
    """Bounded, insertion-ordered TTL cache."""

    def test_get_returns_stored_value(self) -> None:
        cache = MemoryCache(ttl_seconds=30, max_entries=10, clock=FakeClock())
        cache.set("a", 1)

        assert cache.get("a") == 1
        assert cache.keys() == ["a"]
        assert cache.get("missing") is None

    def test_entries_expire_after_ttl(self) -> None:
        clock = FakeClock()
        cache = MemoryCache(ttl_seconds=30, max_entries=10, clock=clock)
        cache.set("a", 1)

        clock.now = 29.9
        assert cache.get("a") == 1

        clock.now = 30.0
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_insert_past_capacity_evicts_oldest(self) -> None:
        cache = MemoryCache(ttl_seconds=30, max_entries=100, clock=FakeClock())
        for i in range(101):
            cache.set(f"key{i}", i)

        assert len(cache) == 100
        assert cache.get("key0") is None
        assert cache.get("key1") == 1
        assert cache.get("key100") == 100

    def test_restoring_a_key_counts_as_new_insertion(self) -> None:
        cache = MemoryCache(ttl_seconds=30, max_entries=2, clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 3)
        cache.set("c", 4)

        assert cache.get("b") is None
        assert cache.get("a") == 3
        assert cache.keys() == ["a", "c"]

    def test_delete_and_clear(self) -> None:
        cache = MemoryCache(clock=FakeClock())
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.delete("a") is True
        assert cache.delete("a") is False
        assert cache.clear() == 1
        assert len(cache) == 0

    def test_stats(self) -> None:
        cache = MemoryCache(ttl_seconds=15, max_entries=5, clock=FakeClock())
        cache.set("a", 1)

        stats = cache.stats()
        assert stats == {"size": 1, "max_entries": 5, "ttl_seconds": 15, "entries": ["a"]}
