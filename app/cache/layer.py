import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, NamedTuple, Optional

from cachetools import TLRUCache, TTLCache
from redis.asyncio import Redis, RedisError

from app.core.config import Settings

logger = logging.getLogger(__name__)


class _Entry(NamedTuple):
    value: Any
    ttl: float


def _entry_expiry(_key: str, entry: _Entry, now: float) -> float:
    return now + entry.ttl


class CacheLayer:
    """
    Two-tier read-through cache.

    L1: Process-local TLRUCache (fast, limited size, per-entry TTL)
    L2: Redis (shared between workers, optional)

    Features:
    - Stampede protection with per-key locks
    - Graceful degradation when Redis is unavailable
    - Automatic key namespacing

    The cache is best-effort: a Redis failure is logged and counted, never
    raised, so reads fall through to the loader and writes still succeed.
    Invalidation reaches L2 and this process's L1; other workers' L1
    entries age out within their TTL.
    """

    def __init__(
        self,
        settings: Settings,
        redis: Redis | None = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._redis = redis
        self.l1 = TLRUCache(maxsize=settings.l1_maxsize, ttu=_entry_expiry, timer=timer)
        self._initialized = False

        # Lock management for cache stampede protection: concurrent loaders of
        # one key share a lock so only one of them reaches the store. Locks
        # expire 300s after last use, which outlasts any single load.
        self._locks = TTLCache(maxsize=10_000, ttl=300)

        # Stats tracking
        self.stats = {
            "l1_hits": 0,
            "l2_hits": 0,
            "misses": 0,
            "errors": 0,
        }

    async def init_cache(self):
        """Connect to Redis if configured; stay L1-only when it is unreachable."""
        if self._initialized:
            return
        self._initialized = True

        if self._redis is None and self._settings.redis_dsn:
            redis = Redis.from_url(
                self._settings.redis_dsn,
                encoding="utf-8",
                decode_responses=True,
                max_connections=self._settings.redis_pool_size,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30,
            )
            try:
                await redis.ping()
            except (RedisError, OSError) as e:
                logger.error(f"Redis initialization failed, running L1 only: {e}")
                await redis.aclose()
                return
            self._redis = redis
            logger.info("Redis connection established")

        logger.info("Cache layer initialized (l2=%s)", "redis" if self._redis else "off")

    def _l1_key(self, key: str) -> str:
        """Build namespaced L1 cache key."""
        return f"{self._settings.cache_namespace}l1:{key}"

    def _l2_key(self, key: str) -> str:
        """Build namespaced L2 cache key."""
        return f"{self._settings.cache_namespace}l2:{key}"

    def _serialize(self, value: Any) -> str:
        return json.dumps(value, default=str)

    def _deserialize(self, raw: str) -> Any:
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            # Return raw string if not valid JSON
            return raw

    async def _lookup(self, key: str) -> tuple[bool, Any]:
        l1_key = self._l1_key(key)

        entry = self.l1.get(l1_key)
        if entry is not None:
            self.stats["l1_hits"] += 1
            logger.debug("L1 hit key=%s", key)
            return True, entry.value

        if self._redis is not None:
            try:
                raw = await self._redis.get(self._l2_key(key))
                if raw is not None:
                    self.stats["l2_hits"] += 1
                    logger.debug("L2 hit key=%s", key)
                    value = self._deserialize(raw)
                    ttl = await self._redis.ttl(self._l2_key(key))
                    if ttl and ttl > 0:
                        # Populate L1 for no longer than L2 will keep it
                        self.l1[l1_key] = _Entry(value, ttl)
                    return True, value
            except RedisError as e:
                logger.error(f"Redis GET error key={key}: {e}")
                self.stats["errors"] += 1

        return False, None

    async def get_or_compute(
        self,
        key: str,
        ttl: float,
        compute: Callable[[], Awaitable[Any]],
    ) -> Any:
        """
        Retrieve value from cache hierarchy: L1 -> L2 -> compute.

        Args:
            key: Cache key (will be namespaced automatically)
            ttl: Lifetime of the stored value in seconds
            compute: Async function producing the value on a miss

        Returns:
            Cached or computed value. A None result is returned but not
            cached; an exception from compute caches nothing and propagates.
        """
        await self.init_cache()

        hit, value = await self._lookup(key)
        if hit:
            return value

        lock = self._get_lock_for_key(key)
        async with lock:
            # Double-check caches after acquiring lock
            hit, value = await self._lookup(key)
            if hit:
                return value

            self.stats["misses"] += 1
            logger.debug("Loading from source key=%s", key)
            value = await compute()

            if value is None:
                return None

            await self._set_both_layers(key, value, ttl)
            return value

    async def _set_both_layers(self, key: str, value: Any, ttl: float):
        # Always set L1 (it's local and fast)
        self.l1[self._l1_key(key)] = _Entry(value, ttl)

        if self._redis is not None:
            try:
                await self._redis.set(
                    self._l2_key(key), self._serialize(value), ex=max(int(ttl), 1)
                )
                logger.debug("Stored in L2 key=%s ttl=%s", key, ttl)
            except RedisError as e:
                logger.error(f"Redis SET error key={key}: {e}")
                self.stats["errors"] += 1

    async def invalidate(self, key: str):
        """
        Delete a key from both cache layers; a missing key is a no-op.

        Deleting from Redis is what keeps other workers from serving the
        pre-mutation value, so its failure is logged as an error.
        """
        await self.init_cache()

        self.l1.pop(self._l1_key(key), None)

        if self._redis is not None:
            try:
                await self._redis.delete(self._l2_key(key))
                logger.debug("Invalidated key=%s", key)
            except RedisError as e:
                logger.error(f"Redis DELETE error key={key}: {e}")
                self.stats["errors"] += 1

    def contains(self, key: str) -> bool:
        """True if this process's L1 holds an unexpired entry for key."""
        return self._l1_key(key) in self.l1

    async def close(self):
        """Graceful shutdown of cache connections."""
        if self._redis is not None:
            try:
                await self._redis.aclose()
                logger.info("Redis connection closed")
            except RedisError as e:
                logger.error(f"Error closing Redis: {e}")
            self._redis = None
        self._initialized = False

    def get_stats(self) -> dict:
        total = self.stats["l1_hits"] + self.stats["l2_hits"] + self.stats["misses"]
        return {
            **self.stats,
            "l1_size": len(self.l1),
            "l1_maxsize": self.l1.maxsize,
            "hit_rate": (
                (self.stats["l1_hits"] + self.stats["l2_hits"]) / total
                if total > 0
                else 0
            ),
        }

    def _get_lock_for_key(self, key: str) -> asyncio.Lock:
        # setdefault hands every concurrent caller for one key the same lock
        return self._locks.setdefault(key, asyncio.Lock())
