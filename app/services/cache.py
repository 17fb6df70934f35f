"""
Redis Cache Service
===================

Best-effort Redis cache for premium status reads.

The authoritative record lives in the database; every cache failure is
logged and treated as a miss. A blank ``REDIS_URL`` disables the cache.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from app.config import settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None


async def init_redis() -> Optional[Redis]:
    """
    Initialize the Redis connection pool.

    Returns:
        Redis client instance, or None when caching is disabled.
    """
    global _redis_client

    if not settings.REDIS_URL:
        return None

    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
            socket_keepalive=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Optional[Redis]:
    """Get Redis client, initializing if necessary."""
    if _redis_client is None:
        return await init_redis()
    return _redis_client


async def close_redis() -> None:
    """Close Redis connection."""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.close()
        _redis_client = None
        logger.info("Redis connection closed")


class CacheManager:
    """
    Redis cache manager with common operations.

    Key naming convention:
        cache:{module}:{resource}:{identifier}
    """

    TTL_SHORT = 300  # 5 minutes

    @staticmethod
    async def get(key: str) -> Optional[Any]:
        """
        Get value from cache.

        Returns:
            Cached value if exists and valid, None otherwise
        """
        try:
            client = await get_redis()
            if client is None:
                return None
            value = await client.get(key)
            if value is None:
                return None
            return json.loads(value)
        except Exception as e:
            logger.warning("Cache get error for key %s: %s", key, e)
            return None

    @staticmethod
    async def set(key: str, value: Any, ttl: int = TTL_SHORT) -> bool:
        """
        Set value in cache with TTL.

        Returns:
            True if successful, False otherwise
        """
        try:
            client = await get_redis()
            if client is None:
                return False
            await client.setex(key, ttl, json.dumps(value, default=str))
            return True
        except Exception as e:
            logger.warning("Cache set error for key %s: %s", key, e)
            return False

    @staticmethod
    async def delete(key: str) -> bool:
        """Delete a key. Returns True if the key existed."""
        try:
            client = await get_redis()
            if client is None:
                return False
            return bool(await client.delete(key))
        except Exception as e:
            logger.warning("Cache delete error for key %s: %s", key, e)
            return False


class CacheKeys:
    """Cache key builders."""

    @staticmethod
    def premium_status(user_id: str) -> str:
        return f"cache:premium:status:{user_id}"


class CacheInvalidator:
    """Cache invalidation on writes."""

    @staticmethod
    async def on_premium_change(user_id: str) -> None:
        """Drop the cached status after a reconciliation commits."""
        await CacheManager.delete(CacheKeys.premium_status(user_id))
