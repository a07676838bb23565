"""
Redis Cache Module

Namespaced JSON cache in front of read-heavy catalog views. When Redis is
disabled or was never initialized every call is a miss and writes are
skipped, so the API works without it.
"""

import json
from typing import Any, Awaitable, Callable, Optional

import structlog
from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from catalog.config import get_settings

logger = structlog.get_logger(__name__)
settings = get_settings()

# Global Redis connection
_redis_pool: Optional[ConnectionPool] = None
_redis_client: Optional[Redis] = None


async def init_redis() -> Optional[Redis]:
    """Initialize the Redis connection pool when caching is enabled"""
    global _redis_pool, _redis_client

    if not settings.redis.enabled:
        logger.info("Redis cache disabled")
        return None
    if _redis_client is not None:
        return _redis_client

    _redis_pool = ConnectionPool.from_url(
        settings.redis.get_url(),
        max_connections=settings.redis.max_connections,
        socket_timeout=settings.redis.socket_timeout,
        decode_responses=settings.redis.decode_responses,
    )
    _redis_client = Redis(connection_pool=_redis_pool)

    try:
        await _redis_client.ping()
        logger.info("Redis connection established")
    except RedisError as e:
        logger.error("Redis connection failed", error=str(e))
        await close_redis()
        raise

    return _redis_client


async def close_redis() -> None:
    """Close Redis connection pool"""
    global _redis_pool, _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None

    if _redis_pool is not None:
        await _redis_pool.disconnect()
        _redis_pool = None
        logger.info("Redis connection closed")


def get_redis() -> Optional[Redis]:
    """Redis client, or None when caching is off"""
    return _redis_client


class CacheManager:
    """
    Cache manager with namespace support.

    Redis failures are logged and treated as misses; the database stays
    the source of truth.

    Example:
        cache = CacheManager("category-tree")
        tree = await cache.get_or_set("all", build_tree)
        await cache.invalidate_all()
    """

    def __init__(self, namespace: str, default_ttl: int = 3600):
        self.namespace = namespace
        self.default_ttl = default_ttl

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[Any]:
        client = get_redis()
        if client is None:
            return None
        try:
            value = await client.get(self._key(key))
        except RedisError as e:
            logger.warning("Cache read failed", namespace=self.namespace, error=str(e))
            return None
        if value is None:
            return None
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        client = get_redis()
        if client is None:
            return False
        try:
            serialized = json.dumps(value, default=str)
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize value for cache", error=str(e))
            return False
        try:
            await client.setex(self._key(key), ttl or self.default_ttl, serialized)
        except RedisError as e:
            logger.warning("Cache write failed", namespace=self.namespace, error=str(e))
            return False
        return True

    async def invalidate_all(self) -> int:
        """Delete every key in the namespace"""
        client = get_redis()
        if client is None:
            return 0
        try:
            keys = [k async for k in client.scan_iter(match=f"{self.namespace}:*")]
            if not keys:
                return 0
            return await client.delete(*keys)
        except RedisError as e:
            logger.warning("Cache invalidation failed", namespace=self.namespace, error=str(e))
            return 0

    async def get_or_set(
        self,
        key: str,
        factory: Callable[[], Awaitable[Any]],
        ttl: Optional[int] = None,
    ) -> Any:
        """
        Get from cache or compute and cache.

        Args:
            key: Cache key
            factory: Async function to compute value if not cached
            ttl: Time-to-live
        """
        value = await self.get(key)
        if value is not None:
            return value

        value = await factory()
        await self.set(key, value, ttl)
        return value


tree_cache = CacheManager("category-tree", default_ttl=settings.redis.tree_ttl_seconds)


async def commit_and_invalidate(session: AsyncSession) -> None:
    """
    Commit the request transaction, then drop the cached tree.

    Invalidating before the commit lets a concurrent tree read re-cache
    rows from before the write for the whole TTL.
    """
    await session.commit()
    await tree_cache.invalidate_all()
