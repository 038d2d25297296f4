import json
import time
from typing import Any, Awaitable, Callable, Optional

from redis.asyncio import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from app.core.config import Settings

import logging

logger = logging.getLogger(__name__)


class CacheStore:
    """
    Redis-backed key/value and sorted-set store.

    Plain values (get/set/delete) are best-effort: Redis failures are logged
    and counted, never raised, so callers degrade to their source of truth.
    Sorted-set primitives raise RedisError so the rate limiter can decide
    how to fail.

    Features:
    - Graceful degradation when Redis is unavailable, with a throttled
      reconnect ping
    - Automatic key namespacing
    - JSON serialization
    """

    def __init__(
        self,
        settings: Settings,
        redis: Redis | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._settings = settings
        self._redis: Redis | None = redis
        self._owns_client = redis is None
        self._clock = clock
        self._ready = False
        self._last_attempt: float | None = None
        # Keys whose invalidation could not be delivered; dropped before reuse
        self._pending_deletes: set[str] = set()

        # Stats tracking
        self.stats = {
            "hits": 0,
            "misses": 0,
            "errors": 0,
            "invalidations": 0,
        }

    async def init_cache(self):
        """Connect (or reconnect) to Redis, at most once per retry interval."""
        if self._ready:
            return

        now = self._clock()
        if (
            self._last_attempt is not None
            and now - self._last_attempt < self._settings.redis_retry_interval_seconds
        ):
            return
        self._last_attempt = now

        try:
            if self._redis is None:
                settings = self._settings
                self._redis = Redis.from_url(
                    settings.redis_dsn,
                    encoding="utf-8",
                    decode_responses=True,
                    max_connections=settings.redis_pool_size,
                    socket_connect_timeout=settings.redis_socket_timeout,
                    socket_timeout=settings.redis_socket_timeout,
                    socket_keepalive=True,
                    health_check_interval=30,
                )

            # Verify connection
            await self._redis.ping()
            if self._pending_deletes:
                await self._redis.delete(*self._pending_deletes)
                logger.info(f"Flushed {len(self._pending_deletes)} pending invalidations")
                self._pending_deletes.clear()
            self._ready = True
            logger.info("Redis connection established")

        except (RedisError, OSError) as e:
            # Allow degraded operation (no cache, limiter fails open)
            logger.error(f"Redis unavailable, running degraded: {e}")
            self._ready = False

    async def ready(self) -> bool:
        """Readiness check used by the rate limiter before touching Redis."""
        await self.init_cache()
        return self._ready

    @property
    def is_ready(self) -> bool:
        return self._ready

    def _key(self, key: str) -> str:
        """Build namespaced cache key."""
        return f"{self._settings.cache_namespace}{key}"

    def _record_error(self, error: Exception):
        self.stats["errors"] += 1
        if isinstance(error, RedisConnectionError):
            # Stop hammering a dead server; init_cache will re-ping later.
            self._ready = False
            self._last_attempt = self._clock()

    def _client(self) -> Redis:
        if self._redis is None or not self._ready:
            raise RedisConnectionError("Redis is not available")
        return self._redis

    def _serialize(self, value: Any) -> str:
        """Serialize value for storage."""
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.error(f"Serialization failed: {e}")
            raise

    def _deserialize(self, raw: str) -> Any:
        """Deserialize value from storage."""
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            # Return raw string if not valid JSON
            return raw

    async def get(
        self,
        key: str,
        loader: Optional[Callable[[], Awaitable[Any]]] = None,
        ttl: Optional[int] = None,
    ):
        """
        Retrieve value from Redis, falling back to loader on a miss.

        Args:
            key: Cache key (will be namespaced automatically)
            loader: Async function to load value on cache miss; its errors
                propagate unchanged
            ttl: TTL in seconds for a populated entry (uses default if None)

        Returns:
            Cached value or loaded value, or None if not found
        """
        await self.init_cache()

        if self._ready:
            try:
                raw = await self._redis.get(self._key(key))
                if raw is not None:
                    self.stats["hits"] += 1
                    logger.debug(f"Cache hit: {key}")
                    return self._deserialize(raw)
            except RedisError as e:
                logger.error(f"Redis GET error for {key}: {e}")
                self._record_error(e)

        self.stats["misses"] += 1
        if loader is None:
            logger.debug(f"Cache miss, no loader: {key}")
            return None

        logger.debug(f"Loading from source: {key}")
        value = await loader()
        if value is None:
            return None

        await self.set(key, value, ttl)
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None):
        """
        Store a value; failures only skip the cache population.

        Args:
            key: Cache key (will be namespaced automatically)
            value: JSON-serializable value
            ttl: TTL in seconds, capped at the configured ceiling
        """
        await self.init_cache()
        if not self._ready:
            return

        ceiling = self._settings.cache_ttl_seconds
        ttl = min(ttl or ceiling, ceiling)
        try:
            await self._redis.set(self._key(key), self._serialize(value), ex=ttl)
            logger.debug(f"Stored {key} (ttl={ttl})")
        except RedisError as e:
            logger.error(f"Redis SET error for {key}: {e}")
            self._record_error(e)

    async def delete(self, key: str):
        """
        Delete a key.

        Deleting is what keeps cached lists coherent, so the DEL is sent
        whenever a client exists, even while the store is marked degraded.
        A key that cannot be deleted is remembered and deleted on reconnect,
        before any read is served again.
        """
        await self.init_cache()
        full_key = self._key(key)
        if self._redis is None:
            self._pending_deletes.add(full_key)
            return

        try:
            await self._redis.delete(full_key)
            self._pending_deletes.discard(full_key)
            self.stats["invalidations"] += 1
            logger.debug(f"Deleted {key}")
        except RedisError as e:
            logger.error(f"Redis DELETE error for {key}: {e}")
            self._record_error(e)
            self._pending_deletes.add(full_key)
            # Keep reads off Redis until the pending delete is delivered
            self._ready = False

    async def delete_pattern(self, pattern: str):
        """Delete all keys matching a glob pattern (e.g. 'tasks:*')."""
        await self.init_cache()
        if self._redis is None:
            return

        try:
            full_pattern = self._key(pattern)
            cursor = 0
            deleted_count = 0

            while True:
                cursor, keys = await self._redis.scan(
                    cursor, match=full_pattern, count=100
                )
                if keys:
                    await self._redis.delete(*keys)
                    deleted_count += len(keys)
                if cursor == 0:
                    break

            logger.info(f"Pattern delete completed: {pattern} ({deleted_count} keys)")

        except RedisError as e:
            logger.error(f"Pattern delete error for {pattern}: {e}")
            self._record_error(e)

    # Sorted-set primitives (rate limiter). These raise on failure.

    async def _zcall(self, method: str, key: str, *args, **kwargs):
        client = self._client()
        try:
            return await getattr(client, method)(self._key(key), *args, **kwargs)
        except RedisError as e:
            self._record_error(e)
            raise

    async def remove_range_by_score(self, key: str, min_score, max_score) -> int:
        return await self._zcall("zremrangebyscore", key, min_score, max_score)

    async def cardinality(self, key: str) -> int:
        return await self._zcall("zcard", key)

    async def range_with_scores(self, key: str, start: int, stop: int) -> list[tuple[str, float]]:
        return await self._zcall("zrange", key, start, stop, withscores=True)

    async def add_scored(self, key: str, score: float, member: str) -> int:
        return await self._zcall("zadd", key, {member: score})

    async def expire(self, key: str, seconds: int) -> bool:
        return await self._zcall("expire", key, seconds)

    async def remove_member(self, key: str, member: str) -> int:
        return await self._zcall("zrem", key, member)

    async def close(self):
        """Graceful shutdown of cache connections."""
        if self._redis and self._owns_client:
            try:
                await self._redis.aclose()
                logger.info("Redis connection closed")
            except (RedisError, OSError) as e:
                logger.error(f"Error closing Redis: {e}")
        self._ready = False

    def get_stats(self) -> dict:
        """Get cache statistics."""
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "ready": self._ready,
            "hit_rate": self.stats["hits"] / lookups if lookups > 0 else 0,
        }
