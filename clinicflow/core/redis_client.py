"""Redis client construction and cache helpers."""

import json
from typing import Any, cast

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError, WatchError

from clinicflow.config import Settings

logger = structlog.get_logger(__name__)


def create_redis_client(settings: Settings) -> redis.Redis:
    """
    Create the async Redis client shared by the cache, event log and broadcast bus.

    Args:
        settings: Application settings

    Returns:
        Redis client instance (connections are opened lazily)
    """
    return redis.Redis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
        health_check_interval=30,
    )


async def check_redis_connection(client: redis.Redis) -> bool:
    """
    Check if Redis connection is healthy.

    Returns:
        True if connection is healthy, False otherwise
    """
    try:
        await client.ping()
        return True
    except Exception:
        return False


class CacheManager:
    """
    Redis-based TTL cache with generation-guarded writes.

    Every cache scope owns a generation counter. Invalidating a scope bumps its
    generation before deleting keys, and readers only store a freshly assembled
    value if the generation they observed before querying the store is still
    current. A reader holding a pre-write snapshot therefore cannot repopulate a
    key that a writer has just invalidated.
    """

    def __init__(self, redis_client: redis.Redis):
        """Initialize cache manager with Redis client."""
        self.redis = redis_client

    @staticmethod
    def _generation_key(scope: str) -> str:
        return f"cache:gen:{scope}"

    async def get(self, key: str) -> str | None:
        """Get value from cache."""
        try:
            return cast(str | None, await self.redis.get(key))
        except RedisError as e:
            logger.warning("cache_get_failed", key=key, error=str(e))
            return None

    async def get_json(self, key: str) -> Any | None:
        """
        Get JSON value from cache and deserialize.

        Args:
            key: Cache key

        Returns:
            Deserialized object or None
        """
        value = await self.get(key)
        if not value:
            return None
        try:
            return json.loads(value)
        except ValueError:
            return None

    async def set_json(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> bool:
        """
        Serialize and set JSON value in cache.

        Args:
            key: Cache key
            value: Value to serialize and cache
            ttl: Time to live in seconds

        Returns:
            True if successful, False otherwise
        """
        try:
            json_value = json.dumps(value, default=str)
            if ttl:
                await self.redis.setex(key, ttl, json_value)
            else:
                await self.redis.set(key, json_value)
            return True
        except RedisError as e:
            logger.warning("cache_set_failed", key=key, error=str(e))
            return False

    async def get_generation(self, scope: str) -> int:
        """
        Read the current generation of a cache scope.

        Args:
            scope: Cache scope (usually the cache key itself)

        Returns:
            Generation number, 0 if never invalidated, -1 if Redis is unavailable
        """
        try:
            value = await self.redis.get(self._generation_key(scope))
            return int(value) if value else 0
        except RedisError:
            return -1

    async def set_json_if_generation(
        self,
        key: str,
        value: Any,
        ttl: int,
        scope: str,
        generation: int,
    ) -> bool:
        """
        Store a value only if the scope generation is unchanged.

        Args:
            key: Cache key
            value: Value to serialize and cache
            ttl: Time to live in seconds
            scope: Cache scope guarding the key
            generation: Generation observed before the value was assembled

        Returns:
            True if the value was stored, False if it was stale or Redis failed
        """
        if generation < 0:
            return False

        generation_key = self._generation_key(scope)
        json_value = json.dumps(value, default=str)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                await pipe.watch(generation_key)
                current = await pipe.get(generation_key)
                if (int(current) if current else 0) != generation:
                    await pipe.unwatch()
                    logger.debug("cache_write_skipped_stale", key=key)
                    return False
                pipe.multi()
                pipe.setex(key, ttl, json_value)
                await pipe.execute()
            return True
        except WatchError:
            logger.debug("cache_write_skipped_stale", key=key)
            return False
        except RedisError as e:
            logger.warning("cache_set_failed", key=key, error=str(e))
            return False

    async def invalidate(self, *keys: str) -> bool:
        """
        Invalidate keys, each acting as its own scope.

        Args:
            keys: Cache keys to invalidate

        Returns:
            True if successful, False otherwise
        """
        if not keys:
            return True
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for key in keys:
                    pipe.incr(self._generation_key(key))
                pipe.delete(*keys)
                await pipe.execute()
            return True
        except RedisError as e:
            logger.warning("cache_invalidate_failed", keys=list(keys), error=str(e))
            return False

    async def invalidate_scope(self, scope: str, pattern: str) -> bool:
        """
        Bump a scope generation and delete every key matching a pattern.

        Args:
            scope: Cache scope guarding the matched keys
            pattern: Redis key pattern (e.g., 'notifications:<user>:*')

        Returns:
            True if successful, False otherwise
        """
        try:
            await self.redis.incr(self._generation_key(scope))
            await self.delete_pattern(pattern)
            return True
        except RedisError as e:
            logger.warning("cache_invalidate_failed", scope=scope, error=str(e))
            return False

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete all keys matching a pattern.

        Uses SCAN so large keyspaces do not block the server.

        Args:
            pattern: Redis key pattern (e.g., 'user:*')

        Returns:
            Number of keys deleted

        Raises:
            RedisError: If Redis is unavailable
        """
        keys = [key async for key in self.redis.scan_iter(match=pattern, count=100)]
        if keys:
            return cast(int, await self.redis.delete(*keys))
        return 0
