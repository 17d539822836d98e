import asyncio
import logging
import time
from typing import Callable, Protocol

from cachetools import TLRUCache
from redis.asyncio import Redis, RedisError

from taskapi.core.config import Settings
from taskapi.core.errors import CacheBackendError

logger = logging.getLogger(__name__)


class CacheBackend(Protocol):
    """Key/value store with per-key TTL. Raises CacheBackendError on failure."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def delete_prefix(self, prefix: str) -> int: ...


class MemoryCacheBackend:
    """
    Process-local cache with per-entry TTL.

    Only consistent for a single worker: invalidation in one process is
    invisible to the others. Use Redis for multi-worker deployments.
    """

    def __init__(self, maxsize: int = 2048, timer: Callable[[], float] = time.monotonic):
        self._entries = TLRUCache(maxsize=maxsize, ttu=_expires_at, timer=timer)

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        return entry[0] if entry is not None else None

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        self._entries[key] = (value, ttl_seconds)

    async def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    async def delete_prefix(self, prefix: str) -> int:
        keys = [key for key in list(self._entries.keys()) if key.startswith(prefix)]
        for key in keys:
            self._entries.pop(key, None)
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)


def _expires_at(_key, entry, now):
    return now + entry[1]


class RedisMemoryGuard:
    """
    Monitors Redis memory usage and provides backpressure signals.

    Pressure levels:
    - 0-4: Normal operation
    - 5-6: Moderate pressure (reduce TTL by 20%)
    - 7-8: High pressure (cap TTL at 60s)
    - 9-10: Critical (skip Redis writes)
    """

    def __init__(self, redis: Redis, refresh_interval: int = 5):
        self.redis = redis
        self.refresh_interval = refresh_interval
        self._last_check = 0.0
        self._cached: dict | None = None

    async def check(self) -> dict:
        """Check memory pressure with caching to avoid INFO spam."""
        now = asyncio.get_running_loop().time()

        # Return cached result if within refresh interval
        if self._cached and (now - self._last_check) < self.refresh_interval:
            return self._cached

        try:
            info = await self.redis.info("memory")
            used = info["used_memory"]
            maxm = info.get("maxmemory", 0)

            if maxm == 0:
                # No memory limit configured
                result = {
                    "level": 0,
                    "ratio": None,
                    "policy": info.get("maxmemory_policy", "noeviction"),
                    "used_mb": used / (1024 * 1024),
                }
            else:
                ratio = used / maxm
                result = {
                    "level": int(min(ratio * 10, 10)),
                    "ratio": ratio,
                    "policy": info.get("maxmemory_policy", "noeviction"),
                    "used_mb": used / (1024 * 1024),
                    "max_mb": maxm / (1024 * 1024),
                }

                if result["level"] >= 9:
                    logger.warning(
                        f"Redis memory critical: level={result['level']} "
                        f"ratio={ratio:.1%} policy={result['policy']}"
                    )
                elif result["level"] >= 7:
                    logger.info(
                        f"Redis memory high: level={result['level']} ratio={ratio:.1%}"
                    )

            self._cached = result
            self._last_check = now
            return result

        except RedisError as e:
            logger.error(f"Memory check failed: {e}")
            # Return safe default on error
            return {"level": 0, "ratio": None, "policy": "unknown", "error": str(e)}

    async def adjust_ttl(self, base_ttl: int) -> int:
        """Scale a TTL by current memory pressure. 0 means skip the write."""
        level = (await self.check())["level"]

        if level >= 9:
            return 0
        elif level >= 7:
            return min(base_ttl, 60)
        elif level >= 5:
            return max(int(base_ttl * 0.8), 1)
        else:
            return base_ttl


class RedisCacheBackend:
    """
    Shared cache on Redis.

    Every RedisError (timeouts included) is re-raised as CacheBackendError so
    callers can degrade to the source of truth.
    """

    def __init__(self, redis: Redis, memory_guard: RedisMemoryGuard | None = None):
        self._redis = redis
        self._memory_guard = memory_guard

    @classmethod
    def from_settings(cls, settings: Settings) -> "RedisCacheBackend":
        redis = Redis.from_url(
            settings.redis_dsn,
            encoding="utf-8",
            decode_responses=True,
            max_connections=settings.redis_pool_size,
            socket_connect_timeout=5,
            socket_timeout=settings.redis_socket_timeout,
            socket_keepalive=True,
            health_check_interval=30,
        )
        return cls(redis, RedisMemoryGuard(redis))

    async def connect(self) -> bool:
        """Verify the connection. A failure is logged, not raised: reads fall back to the DB."""
        try:
            await self._redis.ping()
        except RedisError as e:
            logger.error(f"Redis initialization failed, running without cache: {e}")
            return False
        logger.info("Redis connection established")
        return True

    async def get(self, key: str) -> str | None:
        try:
            return await self._redis.get(key)
        except RedisError as e:
            raise CacheBackendError(f"Redis GET error: {e}") from e

    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        ttl = ttl_seconds
        if self._memory_guard:
            ttl = await self._memory_guard.adjust_ttl(ttl_seconds)
            if ttl == 0:
                logger.debug(f"Skipping Redis write due to memory pressure: {key}")
                return
        try:
            await self._redis.set(key, value, ex=ttl)
        except RedisError as e:
            raise CacheBackendError(f"Redis SET error: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as e:
            raise CacheBackendError(f"Redis DELETE error: {e}") from e

    async def delete_prefix(self, prefix: str) -> int:
        """Delete every key starting with prefix, walking the keyspace with SCAN."""
        cursor = 0
        deleted_count = 0
        try:
            while True:
                cursor, keys = await self._redis.scan(
                    cursor, match=f"{prefix}*", count=100
                )
                if keys:
                    await self._redis.delete(*keys)
                    deleted_count += len(keys)
                if cursor == 0:
                    break
        except RedisError as e:
            raise CacheBackendError(f"Redis pattern delete error: {e}") from e

        logger.debug(f"Pattern delete completed: prefix={prefix} deleted={deleted_count}")
        return deleted_count

    async def close(self):
        """Graceful shutdown of cache connections."""
        try:
            await self._redis.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.error(f"Error closing Redis: {e}")


def build_cache_backend(settings: Settings) -> MemoryCacheBackend | RedisCacheBackend:
    if settings.cache_backend == "memory":
        return MemoryCacheBackend(maxsize=settings.memory_cache_maxsize)
    if settings.cache_backend == "redis":
        return RedisCacheBackend.from_settings(settings)
    raise ValueError(f"Unknown cache backend: {settings.cache_backend}")
