"""
Redis client for the real-time change feed.

Only used when ``REALTIME_BACKEND=redis``: every API worker publishes row
changes to Redis and listens for the ones published by the others. The
client is created on first use so single-worker deployments never connect.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from safereach.app.core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


def get_redis() -> redis.Redis:
    """Shared async Redis client, created on first call."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(
            settings.redis_url,
            decode_responses=settings.redis_decode_responses,
        )
    return _redis_client


async def ping_redis() -> bool:
    """
    Test the Redis connection for the health check.
    
    Returns:
        True if Redis answered, False otherwise
    """
    try:
        return bool(await get_redis().ping())
    except (RedisError, OSError) as e:
        logger.warning("Redis ping failed: %s", e)
        return False


async def close_redis() -> None:
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
