"""
Traffic Cache Manager.

TTL cache for provider responses (routes, geocodes, traffic):
- Keys: sha256 fingerprint of (provider, origin, destination, options)
- Entries: {"payload", "cached_at", "expires_at"} stored as JSON-able dicts
- Backends: in-process memory (default) or Redis

Graceful degradation: every cache failure is logged and swallowed; callers
fall through to a live provider call.
"""

import asyncio
import hashlib
import json
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

import structlog

from walksafe.config import settings
from walksafe.geo import Coordinates
from walksafe.timeutils import utcnow

logger = structlog.get_logger(__name__)

T = TypeVar("T")

KEY_PREFIX = "traffic:"


class CacheBackend(Protocol):
    async def get(self, key: str) -> Optional[dict]: ...

    async def set(self, key: str, entry: dict, ttl_seconds: int) -> None: ...

    async def items(self) -> list[tuple[str, dict]]: ...

    async def delete_many(
        self, keys: list[str], still_doomed: Optional[Callable[[dict], bool]] = None
    ) -> int: ...

    async def close(self) -> None: ...


# ── Backends ─────────────────────────────────────────────────────────────


class MemoryCacheBackend:
    """Process-local dict behind an asyncio lock."""

    def __init__(self):
        self._data: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Optional[dict]:
        async with self._lock:
            entry = self._data.get(key)
            return dict(entry) if entry is not None else None

    async def set(self, key: str, entry: dict, ttl_seconds: int) -> None:
        async with self._lock:
            self._data[key] = dict(entry)

    async def items(self) -> list[tuple[str, dict]]:
        async with self._lock:
            return [(k, dict(v)) for k, v in self._data.items()]

    async def delete_many(
        self, keys: list[str], still_doomed: Optional[Callable[[dict], bool]] = None
    ) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                entry = self._data.get(key)
                if entry is None or (still_doomed is not None and not still_doomed(entry)):
                    continue
                del self._data[key]
                removed += 1
            return removed

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()


class RedisCacheBackend:
    """
    Redis-backed entries (JSON strings). Redis TTLs are set slightly past
    expires_at so that expired entries remain visible to stats and sweeps.
    """

    GRACE_SECONDS = 3600
    MAX_WATCH_ATTEMPTS = 5

    def __init__(self, url: str, client: Any = None):
        self._url = url
        self._redis = client

    async def _client(self):
        if self._redis is None:
            import redis.asyncio as aioredis

            self._redis = aioredis.from_url(
                self._url,
                decode_responses=True,
                socket_connect_timeout=3,
            )
            await self._redis.ping()
            logger.info("redis_connected")
        return self._redis

    async def get(self, key: str) -> Optional[dict]:
        r = await self._client()
        raw = await r.get(key)
        return json.loads(raw) if raw else None

    async def set(self, key: str, entry: dict, ttl_seconds: int) -> None:
        r = await self._client()
        await r.set(
            key,
            json.dumps(entry, ensure_ascii=False, default=str),
            ex=max(1, ttl_seconds) + self.GRACE_SECONDS,
        )

    async def items(self) -> list[tuple[str, dict]]:
        r = await self._client()
        keys = [key async for key in r.scan_iter(match=f"{KEY_PREFIX}*")]
        if not keys:
            return []
        values = await r.mget(keys)
        return [(k, json.loads(v)) for k, v in zip(keys, values) if v]

    async def delete_many(
        self, keys: list[str], still_doomed: Optional[Callable[[dict], bool]] = None
    ) -> int:
        """
        WATCH the keys, re-read them and delete, in one MULTI, only those that
        still satisfy still_doomed. A concurrent write restarts the attempt.
        """
        if not keys:
            return 0
        from redis.exceptions import WatchError

        r = await self._client()
        async with r.pipeline(transaction=True) as pipe:
            for attempt in range(1, self.MAX_WATCH_ATTEMPTS + 1):
                try:
                    await pipe.watch(*keys)
                    values = await pipe.mget(keys)
                    doomed = [
                        k
                        for k, v in zip(keys, values)
                        if v and (still_doomed is None or still_doomed(json.loads(v)))
                    ]
                    if not doomed:
                        return 0
                    pipe.multi()
                    pipe.delete(*doomed)
                    results = await pipe.execute()
                    return int(results[0] or 0)
                except WatchError:
                    logger.debug("traffic_cache_cleanup_retry", attempt=attempt, keys=len(keys))
            raise WatchError(f"cache keys kept changing during {self.MAX_WATCH_ATTEMPTS} cleanup attempts")

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_backend(kind: Optional[str] = None) -> CacheBackend:
    kind = (kind or settings.traffic_cache_backend).lower()
    if kind == "redis":
        return RedisCacheBackend(settings.redis_url)
    if kind != "memory":
        logger.warning("unknown_cache_backend", backend=kind, fallback="memory")
    return MemoryCacheBackend()


# ── Manager ──────────────────────────────────────────────────────────────


class TrafficCacheManager:
    """Owns every cache entry. Shared process-wide; inject one instance."""

    def __init__(
        self,
        backend: Optional[CacheBackend] = None,
        clock: Callable[[], float] = time.time,
        local_clock: Callable[[], datetime] = utcnow,
    ):
        self.backend = backend or create_backend()
        self._clock = clock
        self._local_clock = local_clock

    # ── Keys & TTL ────────────────────────────────────────────────────

    @staticmethod
    def make_key(
        provider: str,
        origin: Any = None,
        destination: Any = None,
        options: Optional[dict] = None,
    ) -> str:
        """Canonical fingerprint: coordinates rounded to 6 places, options key-sorted."""
        fingerprint = {
            "provider": provider,
            "origin": _canonical(origin),
            "destination": _canonical(destination),
            "options": _canonical(options or {}),
        }
        digest = hashlib.sha256(
            json.dumps(fingerprint, sort_keys=True, separators=(",", ":")).encode("utf-8")
        ).hexdigest()
        return f"{KEY_PREFIX}{provider}:{digest}"

    def calculate_ttl(self, now: Optional[datetime] = None) -> int:
        """Default TTL by time of day (local clock)."""
        now = now or self._local_clock()
        if now.weekday() >= 5:
            return settings.traffic_ttl_weekend
        hour = now.hour
        if 7 <= hour < 9 or 17 <= hour < 19:
            return settings.traffic_ttl_rush_hour
        if hour >= 22 or hour < 6:
            return settings.traffic_ttl_night
        return settings.traffic_ttl_normal

    # ── Read / write ──────────────────────────────────────────────────

    async def get(self, key: str) -> Optional[Any]:
        """Payload if present and unexpired, else None."""
        try:
            entry = await self.backend.get(key)
        except Exception as e:
            logger.warning("traffic_cache_get_failed", key=key, error=str(e))
            return None
        if entry is None:
            return None
        if float(entry.get("expires_at", 0)) <= self._clock():
            return None
        return entry.get("payload")

    async def put(self, key: str, payload: Any, ttl_seconds: Optional[int] = None) -> bool:
        ttl = int(ttl_seconds if ttl_seconds is not None else self.calculate_ttl())
        now = self._clock()
        entry = {"payload": payload, "cached_at": now, "expires_at": now + ttl}
        try:
            await self.backend.set(key, entry, ttl)
            return True
        except Exception as e:
            logger.warning("traffic_cache_put_failed", key=key, error=str(e))
            return False

    async def remember(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        ttl_seconds: Optional[int] = None,
        serialize: Callable[[T], Any] = lambda v: v,
        deserialize: Callable[[Any], T] = lambda v: v,
    ) -> T:
        """Cached payload for key, or produce, store and return it."""
        cached = await self.get(key)
        if cached is not None:
            try:
                value = deserialize(cached)
                logger.debug("traffic_cache_hit", key=key)
                return value
            except Exception as e:
                logger.warning("traffic_cache_corrupt_entry", key=key, error=str(e))

        value = await producer()
        await self.put(key, serialize(value), ttl_seconds)
        return value

    # ── Operator surface ──────────────────────────────────────────────

    async def get_cache_stats(self) -> dict[str, Any]:
        try:
            entries = await self.backend.items()
        except Exception as e:
            logger.error("traffic_cache_stats_failed", error=str(e))
            return {"total_keys": 0, "valid_keys": 0, "expired_keys": 0, "memory_usage": "unknown"}

        now = self._clock()
        valid = sum(1 for _, entry in entries if float(entry.get("expires_at", 0)) > now)
        size = sum(
            len(key) + len(json.dumps(entry, default=str)) for key, entry in entries
        )
        return {
            "total_keys": len(entries),
            "valid_keys": valid,
            "expired_keys": len(entries) - valid,
            "memory_usage": _human_bytes(size),
        }

    @staticmethod
    def hit_rate(stats: dict[str, Any]) -> float:
        total = stats.get("total_keys") or 0
        if total <= 0:
            return 0.0
        return round(stats.get("valid_keys", 0) / total * 100, 2)

    async def cleanup_expired_cache(
        self, force: bool = False, min_remaining_ttl: Optional[int] = None
    ) -> int:
        """
        Remove entries with expires_at <= now. Force mode also evicts entries
        whose remaining TTL is below min_remaining_ttl. Returns removed count.
        """
        threshold = float(
            settings.cache_force_min_ttl_seconds if min_remaining_ttl is None else min_remaining_ttl
        )
        try:
            entries = await self.backend.items()
            now = self._clock()
            def is_doomed(entry: dict) -> bool:
                remaining = float(entry.get("expires_at", 0)) - now
                return remaining <= 0 or (force and remaining < threshold)

            doomed = [key for key, entry in entries if is_doomed(entry)]
            # Entries refreshed since the scan are rechecked and kept
            removed = await self.backend.delete_many(doomed, still_doomed=is_doomed)
        except Exception as e:
            logger.error("traffic_cache_cleanup_failed", force=force, error=str(e))
            return 0

        logger.info(
            "traffic_cache_cleaned",
            removed=removed,
            scanned=len(entries),
            force=force,
        )
        return removed

    async def close(self) -> None:
        try:
            await self.backend.close()
        except Exception as e:
            logger.warning("traffic_cache_close_failed", error=str(e))


def _canonical(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Coordinates):
        return [round(value.latitude, 6), round(value.longitude, 6)]
    if hasattr(value, "to_dict"):
        return _canonical(value.to_dict())
    if isinstance(value, dict):
        return {str(k): _canonical(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    if isinstance(value, float):
        return round(value, 6)
    return value


def _human_bytes(size: int) -> str:
    if size < 1024:
        return f"{size}B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f}K"
    return f"{size / (1024 * 1024):.1f}M"
