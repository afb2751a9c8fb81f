"""
Best-effort Redis cache in front of the catalog stores.

Any backend failure is logged and treated as a miss (reads) or a no-op
(writes); nothing raised by Redis ever reaches a caller. A circuit breaker
stops network calls for a while after repeated failures.
"""

import hashlib
import json
import logging
from typing import Any, Dict, Optional

import redis.asyncio as redis  # type: ignore
from redis.exceptions import RedisError  # type: ignore

from polystore.common.exceptions import CacheError
from polystore.common.metrics import cache_requests_total
from polystore.common.resilience import CircuitBreaker, CircuitBreakerError
from polystore.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)

# Key space
DATASET_PREFIX = "dataset"
LIST_PREFIX = "datasets:list"
SEARCH_PREFIX = "datasets:search"
LIST_PATTERN = f"{LIST_PREFIX}:*"
SEARCH_PATTERN = f"{SEARCH_PREFIX}:*"


def stable_hash(value: Any) -> str:
    """First 8 hex chars of MD5 over canonical (sorted-key) JSON."""
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.md5(canonical.encode("utf-8")).hexdigest()[:8]


def dataset_key(dataset_id: str) -> str:
    return f"{DATASET_PREFIX}:{dataset_id}"


def stats_key(dataset_id: str) -> str:
    return f"{DATASET_PREFIX}:{dataset_id}:stats"


def list_key(filters: Dict[str, Any], options: Dict[str, Any]) -> str:
    return f"{LIST_PREFIX}:{stable_hash(filters)}:{stable_hash(options)}"


def normalize_keyword(keyword: str) -> str:
    return keyword.strip().lower()


def search_key(keyword: str) -> str:
    return f"{SEARCH_PREFIX}:{stable_hash(normalize_keyword(keyword))}"


def create_cache_client(settings: Settings) -> "redis.Redis":
    """Redis client for the cache. Does not connect until first use."""
    return redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
    )


class CacheLayer:
    """
    Read-through / invalidate-on-write cache.

    Values are stored as JSON with a TTL. With no client (cache disabled)
    every call is a no-op.
    """

    def __init__(self, client: Optional[Any] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.client = client
        self.scan_count = self.settings.cache_scan_count
        self.breaker = CircuitBreaker(
            "cache",
            failure_threshold=self.settings.cache_failure_threshold,
            recovery_timeout=self.settings.cache_recovery_timeout,
            expected_exception=CacheError,
        )

    @property
    def enabled(self) -> bool:
        return self.client is not None

    @staticmethod
    async def _redis(func, *args) -> Any:
        try:
            return await func(*args)
        except RedisError as e:
            raise CacheError(str(e)) from e

    async def _call(self, operation: str, func, *args) -> Any:
        """Run a Redis call through the breaker; returns None on a backend failure."""
        try:
            return await self.breaker.call(self._redis, func, *args)
        except CircuitBreakerError:
            cache_requests_total.labels(result="error").inc()
            return None
        except CacheError as e:
            cache_requests_total.labels(result="error").inc()
            logger.warning(f"Cache {operation} failed: {e}")
            return None

    async def ping(self) -> bool:
        if not self.enabled:
            return False
        return bool(await self._call("ping", self.client.ping))

    async def get(self, key: str) -> Optional[Any]:
        """Cached value for ``key``, or None on miss or failure."""
        if not self.enabled:
            return None

        raw = await self._call("get", self.client.get, key)
        if raw is None:
            cache_requests_total.labels(result="miss").inc()
            return None

        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding undecodable cache entry {key}")
            cache_requests_total.labels(result="miss").inc()
            return None

        cache_requests_total.labels(result="hit").inc()
        return value

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        if not self.enabled:
            return False
        payload = json.dumps(value, default=str)
        return bool(await self._call("set", self.client.setex, key, ttl, payload))

    async def delete(self, *keys: str) -> int:
        if not self.enabled or not keys:
            return 0
        return await self._call("delete", self.client.delete, *keys) or 0

    async def del_by_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern.

        Keys are found with SCAN and deleted in batches of ``scan_count``.

        Returns:
            Number of keys deleted (0 on failure)
        """
        if not self.enabled:
            return 0

        async def _scan_delete() -> int:
            deleted = 0
            batch = []
            async for key in self.client.scan_iter(match=pattern, count=self.scan_count):
                batch.append(key)
                if len(batch) >= self.scan_count:
                    deleted += await self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self.client.delete(*batch)
            return deleted

        deleted = await self._call("pattern delete", _scan_delete) or 0
        if deleted:
            logger.debug(f"Cache invalidated {deleted} keys matching {pattern}")
        return deleted

    async def invalidate_lists(self) -> None:
        """Drop every cached list page and search result."""
        await self.del_by_pattern(LIST_PATTERN)
        await self.del_by_pattern(SEARCH_PATTERN)

    async def invalidate_dataset(self, dataset_id: str) -> None:
        """Drop a dataset's entry and stats plus every list/search result."""
        await self.delete(dataset_key(dataset_id), stats_key(dataset_id))
        await self.invalidate_lists()

    async def close(self) -> None:
        if self.client is not None:
            try:
                await self.client.aclose()
            except RedisError as e:
                logger.warning(f"Cache close failed: {e}")
