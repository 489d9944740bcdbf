"""
Traffic Cache Manager Tests.

Tests: expiry sweep removes exactly the expired entries, force mode,
statistics, TTL bands, key canonicalization, graceful degradation, Redis
sweeps that recheck entries under WATCH.
"""

import json
from datetime import datetime

import pytest
from redis.exceptions import WatchError

from walksafe.geo import Coordinates
from walksafe.services.traffic_cache import (
    MemoryCacheBackend,
    RedisCacheBackend,
    TrafficCacheManager,
    create_backend,
)

T0 = 1_700_000_000.0


class _Clock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class _BrokenBackend(MemoryCacheBackend):
    async def get(self, key):
        raise ConnectionError("redis down")

    async def set(self, key, entry, ttl_seconds):
        raise ConnectionError("redis down")

    async def items(self):
        raise ConnectionError("redis down")


def _make_cache(now: float = T0):
    clock = _Clock(now)
    return TrafficCacheManager(MemoryCacheBackend(), clock=clock), clock


async def _seed(cache, n_expired: int, n_valid: int, remaining: float = 600) -> None:
    for i in range(n_expired):
        await cache.backend.set(
            f"traffic:google:expired{i}",
            {"payload": {"i": i}, "cached_at": T0 - 1000, "expires_at": T0 - 1 - i},
            1,
        )
    for i in range(n_valid):
        await cache.backend.set(
            f"traffic:google:valid{i}",
            {"payload": {"i": i}, "cached_at": T0, "expires_at": T0 + remaining},
            int(remaining),
        )


@pytest.mark.asyncio
class TestCleanup:
    async def test_removes_exactly_expired_entries(self):
        cache, _ = _make_cache()
        await _seed(cache, n_expired=4, n_valid=3)

        removed = await cache.cleanup_expired_cache()

        assert removed == 4
        stats = await cache.get_cache_stats()
        assert stats["total_keys"] == 3
        assert stats["expired_keys"] == 0

    async def test_entry_expiring_now_is_removed(self):
        cache, _ = _make_cache()
        await cache.backend.set("traffic:here:edge", {"payload": 1, "cached_at": T0 - 60, "expires_at": T0}, 60)
        assert await cache.cleanup_expired_cache() == 1

    async def test_empty_cache(self):
        cache, _ = _make_cache()
        assert await cache.cleanup_expired_cache() == 0
        assert await cache.cleanup_expired_cache(force=True) == 0

    async def test_force_evicts_nearly_expired(self):
        cache, _ = _make_cache()
        await _seed(cache, n_expired=2, n_valid=2, remaining=30)
        await cache.backend.set(
            "traffic:google:long", {"payload": 1, "cached_at": T0, "expires_at": T0 + 3600}, 3600
        )

        assert await cache.cleanup_expired_cache(force=False) == 2
        assert await cache.cleanup_expired_cache(force=True, min_remaining_ttl=60) == 2
        assert (await cache.get_cache_stats())["total_keys"] == 1

    async def test_sweep_after_time_passes(self):
        cache, clock = _make_cache()
        await cache.put("traffic:google:a", {"route": 1}, ttl_seconds=120)
        await cache.put("traffic:google:b", {"route": 2}, ttl_seconds=600)

        clock.now += 300
        assert await cache.cleanup_expired_cache() == 1
        assert await cache.get("traffic:google:b") == {"route": 2}

    async def test_backend_failure_returns_zero(self):
        cache = TrafficCacheManager(_BrokenBackend(), clock=_Clock())
        assert await cache.cleanup_expired_cache() == 0

    async def test_entry_refreshed_after_scan_is_kept(self):
        cache, _ = _make_cache()
        await _seed(cache, n_expired=2, n_valid=0)
        scan = cache.backend.items

        async def scan_then_refresh():
            snapshot = await scan()
            await cache.backend.set(
                "traffic:google:expired0",
                {"payload": {"fresh": True}, "cached_at": T0, "expires_at": T0 + 600},
                600,
            )
            return snapshot

        cache.backend.items = scan_then_refresh

        assert await cache.cleanup_expired_cache() == 1
        assert await cache.get("traffic:google:expired0") == {"fresh": True}


class _FakePipeline:
    """Enough of redis.asyncio's WATCH/MULTI pipeline for the cleanup path."""

    def __init__(self, redis):
        self.redis = redis
        self.queued: tuple = ()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def watch(self, *keys):
        self.redis.watched.append(keys)

    async def mget(self, keys):
        values = [self.redis.data.get(k) for k in keys]
        if self.redis.on_read:
            self.redis.on_read.pop(0)()
        return values

    def multi(self):
        self.queued = ()

    def delete(self, *keys):
        self.queued = keys

    async def execute(self):
        if self.redis.conflicts:
            self.redis.conflicts -= 1
            raise WatchError("watched key changed")
        return [sum(self.redis.data.pop(k, None) is not None for k in self.queued)]


class _FakeRedis:
    def __init__(self, data, conflicts=0, on_read=None):
        self.data = data
        self.conflicts = conflicts
        self.on_read = list(on_read or [])
        self.watched: list[tuple] = []

    def pipeline(self, transaction=True):
        return _FakePipeline(self)


def _entry(expires_at):
    return json.dumps({"payload": 1, "cached_at": T0 - 60, "expires_at": expires_at})


@pytest.mark.asyncio
class TestRedisCleanup:
    async def test_only_still_expired_keys_deleted(self):
        redis = _FakeRedis({"traffic:a": _entry(T0 - 1), "traffic:b": _entry(T0 + 600)})
        backend = RedisCacheBackend("redis://unused", client=redis)

        removed = await backend.delete_many(
            ["traffic:a", "traffic:b"], still_doomed=lambda e: e["expires_at"] <= T0
        )

        assert removed == 1
        assert set(redis.data) == {"traffic:b"}
        assert redis.watched == [("traffic:a", "traffic:b")]

    async def test_concurrent_write_restarts_with_fresh_read(self):
        redis = _FakeRedis({"traffic:a": _entry(T0 - 1)}, conflicts=1)

        def refresh():
            redis.data["traffic:a"] = _entry(T0 + 600)

        redis.on_read = [refresh]
        backend = RedisCacheBackend("redis://unused", client=redis)

        removed = await backend.delete_many(["traffic:a"], still_doomed=lambda e: e["expires_at"] <= T0)

        assert removed == 0
        assert "traffic:a" in redis.data
        assert len(redis.watched) == 2

    async def test_gives_up_after_repeated_conflicts(self):
        redis = _FakeRedis({"traffic:a": _entry(T0 - 1)}, conflicts=RedisCacheBackend.MAX_WATCH_ATTEMPTS)
        backend = RedisCacheBackend("redis://unused", client=redis)

        with pytest.raises(WatchError):
            await backend.delete_many(["traffic:a"])
        assert "traffic:a" in redis.data


@pytest.mark.asyncio
class TestReadWrite:
    async def test_expired_entry_not_served(self):
        cache, clock = _make_cache()
        await cache.put("traffic:google:k", {"v": 1}, ttl_seconds=10)
        assert await cache.get("traffic:google:k") == {"v": 1}
        clock.now += 10
        assert await cache.get("traffic:google:k") is None

    async def test_remember_calls_producer_once(self):
        cache, _ = _make_cache()
        call_count = 0

        async def produce():
            nonlocal call_count
            call_count += 1
            return {"distance": 1200}

        assert await cache.remember("traffic:google:r", produce, 60) == {"distance": 1200}
        assert await cache.remember("traffic:google:r", produce, 60) == {"distance": 1200}
        assert call_count == 1

    async def test_remember_degrades_when_backend_down(self):
        cache = TrafficCacheManager(_BrokenBackend(), clock=_Clock())
        call_count = 0

        async def produce():
            nonlocal call_count
            call_count += 1
            return "live"

        assert await cache.remember("traffic:google:x", produce, 60) == "live"
        assert await cache.remember("traffic:google:x", produce, 60) == "live"
        assert call_count == 2

    async def test_corrupt_entry_refetched(self):
        cache, _ = _make_cache()
        await cache.put("traffic:google:c", {"unexpected": True}, 60)

        async def produce():
            return [1, 2]

        def deserialize(data):
            return list(data["items"])

        value = await cache.remember(
            "traffic:google:c", produce, 60, serialize=lambda v: {"items": v}, deserialize=deserialize
        )
        assert value == [1, 2]


@pytest.mark.asyncio
class TestStats:
    async def test_counts_and_hit_rate(self):
        cache, _ = _make_cache()
        await _seed(cache, n_expired=1, n_valid=3)

        stats = await cache.get_cache_stats()

        assert stats["total_keys"] == 4
        assert stats["valid_keys"] == 3
        assert stats["expired_keys"] == 1
        assert stats["memory_usage"].endswith("B") or stats["memory_usage"].endswith("K")
        assert TrafficCacheManager.hit_rate(stats) == 75.0

    async def test_hit_rate_empty(self):
        cache, _ = _make_cache()
        assert TrafficCacheManager.hit_rate(await cache.get_cache_stats()) == 0.0

    async def test_stats_when_backend_down(self):
        cache = TrafficCacheManager(_BrokenBackend(), clock=_Clock())
        stats = await cache.get_cache_stats()
        assert stats["total_keys"] == 0
        assert stats["memory_usage"] == "unknown"


class TestKeysAndTtl:
    def test_key_stable_across_option_order(self):
        origin, destination = Coordinates(-23.55, -46.63), Coordinates(-23.56, -46.64)
        a = TrafficCacheManager.make_key("google", origin, destination, {"mode": "walking", "avoid_tolls": False})
        b = TrafficCacheManager.make_key("google", origin, destination, {"avoid_tolls": False, "mode": "walking"})
        assert a == b
        assert a.startswith("traffic:google:")

    def test_key_ignores_sub_micro_degree_noise(self):
        a = TrafficCacheManager.make_key("here", Coordinates(-23.5500001, -46.63))
        b = TrafficCacheManager.make_key("here", Coordinates(-23.55, -46.63))
        assert a == b

    def test_key_differs_by_provider_and_destination(self):
        origin = Coordinates(-23.55, -46.63)
        assert TrafficCacheManager.make_key("google", origin) != TrafficCacheManager.make_key("here", origin)
        assert TrafficCacheManager.make_key("google", origin, Coordinates(0, 0)) != TrafficCacheManager.make_key(
            "google", origin, Coordinates(1, 1)
        )

    @pytest.mark.parametrize(
        "moment,expected",
        [
            (datetime(2024, 3, 13, 8, 0), 120),   # Wednesday rush hour
            (datetime(2024, 3, 13, 18, 30), 120),
            (datetime(2024, 3, 13, 12, 0), 300),
            (datetime(2024, 3, 13, 23, 0), 900),
            (datetime(2024, 3, 13, 3, 0), 900),
            (datetime(2024, 3, 16, 8, 0), 600),   # Saturday
        ],
    )
    def test_ttl_bands(self, moment, expected):
        cache = TrafficCacheManager(MemoryCacheBackend())
        assert cache.calculate_ttl(moment) == expected

    def test_create_backend(self):
        assert isinstance(create_backend("memory"), MemoryCacheBackend)
        assert isinstance(create_backend("redis"), RedisCacheBackend)
        assert isinstance(create_backend("carrier-pigeon"), MemoryCacheBackend)
