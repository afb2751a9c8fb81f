"""
Unit tests for the best-effort cache layer.
"""

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from polystore.catalog.cache import (
    CacheLayer,
    dataset_key,
    list_key,
    search_key,
    stable_hash,
    stats_key,
)
from polystore.common.exceptions import CacheError
from polystore.common.metrics import cache_requests_total
from polystore.common.resilience import CircuitState


class TestCacheKeys:
    """Tests for deterministic key derivation."""

    def test_dataset_keys(self):
        assert dataset_key("abc") == "dataset:abc"
        assert stats_key("abc") == "dataset:abc:stats"

    def test_list_key_ignores_dict_order(self):
        a = list_key({"category": "json", "tag": "x"}, {"page": 1, "limit": 20})
        b = list_key({"tag": "x", "category": "json"}, {"limit": 20, "page": 1})

        assert a == b
        assert a.startswith("datasets:list:")
        assert len(a.split(":")[2]) == 8

    def test_list_key_changes_with_options(self):
        assert list_key({}, {"page": 1}) != list_key({}, {"page": 2})

    def test_search_key_normalizes_keyword(self):
        assert search_key("  Sales ") == search_key("sales")
        assert search_key("sales").startswith("datasets:search:")

    def test_stable_hash_length(self):
        assert len(stable_hash({"a": [1, 2]})) == 8


class TestCacheOperations:
    """Tests for get/set/delete against a working backend."""

    @pytest.mark.asyncio
    async def test_set_then_get(self, cache, fake_redis):
        await cache.set("k", {"a": [1, 2]}, ttl=30)

        assert await cache.get("k") == {"a": [1, 2]}
        assert fake_redis.ttls["k"] == 30

    @pytest.mark.asyncio
    async def test_miss_returns_none(self, cache):
        before = cache_requests_total.labels(result="miss")._value.get()

        assert await cache.get("missing") is None
        assert cache_requests_total.labels(result="miss")._value.get() == before + 1

    @pytest.mark.asyncio
    async def test_undecodable_value_is_a_miss(self, cache, fake_redis):
        fake_redis.data["bad"] = "{not json"

        assert await cache.get("bad") is None

    @pytest.mark.asyncio
    async def test_delete(self, cache, fake_redis):
        await cache.set("a", 1, ttl=10)
        await cache.set("b", 2, ttl=10)

        assert await cache.delete("a", "b", "c") == 2
        assert fake_redis.data == {}

    @pytest.mark.asyncio
    async def test_del_by_pattern_batches_and_is_idempotent(self, cache, fake_redis):
        for i in range(5):
            await cache.set(f"datasets:list:{i}:x", i, ttl=10)
        await cache.set("dataset:keep", 1, ttl=10)

        assert await cache.del_by_pattern("datasets:list:*") == 5
        assert await cache.del_by_pattern("datasets:list:*") == 0
        assert list(fake_redis.data) == ["dataset:keep"]
        # scan_count=2 -> batches of 2, 2, 1
        assert fake_redis.calls["delete"] == 3

    @pytest.mark.asyncio
    async def test_invalidate_dataset(self, cache, fake_redis):
        await cache.set(dataset_key("d1"), {}, ttl=10)
        await cache.set(stats_key("d1"), {}, ttl=10)
        await cache.set(dataset_key("d2"), {}, ttl=10)
        await cache.set(list_key({}, {"page": 1}), [], ttl=10)
        await cache.set(search_key("x"), [], ttl=10)

        await cache.invalidate_dataset("d1")

        assert list(fake_redis.data) == [dataset_key("d2")]


class TestCacheDegradation:
    """Tests that backend failures never escape the cache layer."""

    @pytest.mark.asyncio
    async def test_failures_are_misses_and_noops(self, cache, fake_redis):
        fake_redis.fail = True

        assert await cache.get("k") is None
        assert await cache.set("k", 1, ttl=10) is False
        assert await cache.delete("k") == 0
        assert await cache.del_by_pattern("*") == 0

    @pytest.mark.asyncio
    async def test_backend_errors_become_cache_errors(self, fake_redis):
        fake_redis.fail = True

        with pytest.raises(CacheError) as exc_info:
            await CacheLayer._redis(fake_redis.get, "k")

        assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_only_backend_errors_trip_the_breaker(self, cache):
        async def broken(*args):
            raise ValueError("not a backend failure")

        with pytest.raises(ValueError):
            await cache._call("get", broken, "k")

        assert cache.breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_breaker_opens_and_skips_backend(self, cache, fake_redis):
        fake_redis.fail = True
        for _ in range(3):
            await cache.get("k")
        assert cache.breaker.state == CircuitState.OPEN

        calls = fake_redis.calls["get"]
        fake_redis.fail = False
        assert await cache.get("k") is None
        assert fake_redis.calls["get"] == calls

    @pytest.mark.asyncio
    async def test_breaker_recovers_after_timeout(self, cache, fake_redis):
        fake_redis.fail = True
        for _ in range(3):
            await cache.get("k")
        fake_redis.fail = False
        cache.breaker.last_failure_time -= cache.breaker.recovery_timeout

        await cache.set("k", 1, ttl=10)

        assert cache.breaker.state == CircuitState.CLOSED
        assert await cache.get("k") == 1

    @pytest.mark.asyncio
    async def test_disabled_cache_is_inert(self, test_settings):
        cache = CacheLayer(None, test_settings)

        assert not cache.enabled
        assert await cache.get("k") is None
        assert await cache.set("k", 1, ttl=10) is False
        assert await cache.del_by_pattern("*") == 0
        assert await cache.ping() is False
        await cache.close()

    @pytest.mark.asyncio
    async def test_close(self, cache, fake_redis):
        await cache.close()

        assert fake_redis.closed
