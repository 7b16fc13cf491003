# tests/test_cache_layer.py

from __future__ import annotations

import asyncio

import pytest

from app.cache.layer import CacheLayer
from app.core.config import Settings

from .fakes import BrokenRedis, FakeRedis, FakeTimer


class Loader:
    """Counts calls so tests can tell hits from recomputes."""

    def __init__(self, value=None, error: Exception | None = None) -> None:
        self.value = value
        self.error = error
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return self.value


async def test_second_read_is_served_from_l1(cache: CacheLayer) -> None:
    loader = Loader({"n": 1})

    assert await cache.get_or_compute("k", 60, loader) == {"n": 1}
    assert await cache.get_or_compute("k", 60, loader) == {"n": 1}

    assert loader.calls == 1
    assert cache.stats["l1_hits"] == 1
    assert cache.stats["misses"] == 1


async def test_entry_expires_after_ttl(cache: CacheLayer, timer: FakeTimer) -> None:
    loader = Loader("v")
    await cache.get_or_compute("k", 60, loader)

    timer.advance(59)
    assert cache.contains("k")
    timer.advance(2)
    assert not cache.contains("k")

    await cache.get_or_compute("k", 60, loader)
    assert loader.calls == 2


async def test_ttl_is_per_entry(cache: CacheLayer, timer: FakeTimer) -> None:
    await cache.get_or_compute("short", 5, Loader("a"))
    await cache.get_or_compute("long", 60, Loader("b"))

    timer.advance(10)

    assert not cache.contains("short")
    assert cache.contains("long")


async def test_failing_compute_caches_nothing(cache: CacheLayer) -> None:
    failing = Loader(error=LookupError("boom"))

    with pytest.raises(LookupError):
        await cache.get_or_compute("k", 60, failing)

    assert not cache.contains("k")
    assert await cache.get_or_compute("k", 60, Loader("ok")) == "ok"


async def test_none_is_returned_but_not_cached(cache: CacheLayer) -> None:
    loader = Loader(None)

    assert await cache.get_or_compute("k", 60, loader) is None
    assert await cache.get_or_compute("k", 60, loader) is None
    assert loader.calls == 2


async def test_invalidate_removes_entry_and_ignores_missing(cache: CacheLayer) -> None:
    await cache.get_or_compute("k", 60, Loader("v"))

    await cache.invalidate("k")
    await cache.invalidate("never-set")

    assert not cache.contains("k")


async def test_concurrent_misses_compute_once(cache: CacheLayer) -> None:
    loader = Loader("v")

    results = await asyncio.gather(
        *(cache.get_or_compute("k", 60, loader) for _ in range(10))
    )

    assert results == ["v"] * 10
    assert loader.calls == 1


async def test_l2_is_shared_between_layers(settings: Settings) -> None:
    redis = FakeRedis()
    writer = CacheLayer(settings, redis=redis, timer=FakeTimer())
    reader = CacheLayer(settings, redis=redis, timer=FakeTimer())

    await writer.get_or_compute("k", 60, Loader({"a": [1, 2]}))
    loader = Loader("unused")
    value = await reader.get_or_compute("k", 60, loader)

    assert value == {"a": [1, 2]}
    assert loader.calls == 0
    assert reader.stats["l2_hits"] == 1
    assert reader.contains("k")

    await writer.invalidate("k")
    assert redis.data == {}


async def test_redis_failures_degrade_to_compute(settings: Settings) -> None:
    cache = CacheLayer(settings, redis=BrokenRedis(), timer=FakeTimer())
    loader = Loader("fresh")

    assert await cache.get_or_compute("k", 60, loader) == "fresh"
    await cache.invalidate("k")

    assert loader.calls == 1
    assert cache.stats["errors"] >= 2


async def test_unreachable_redis_falls_back_to_l1(settings: Settings) -> None:
    settings = settings.model_copy(update={"redis_dsn": "redis://127.0.0.1:1/0"})
    cache = CacheLayer(settings, timer=FakeTimer())

    await cache.init_cache()

    assert await cache.get_or_compute("k", 60, Loader("v")) == "v"
    assert cache.get_stats()["misses"] == 1
    await cache.close()
