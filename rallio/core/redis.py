"""
Redis client for processing locks with async support
"""
import logging
import time
from typing import Optional

import redis.asyncio as aioredis
from redis.asyncio import Redis

from rallio.core.config import REDIS_URL

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None


def _display_url() -> str:
    return REDIS_URL.split("@")[-1] if "@" in REDIS_URL else REDIS_URL


async def get_redis() -> Redis:
    """
    Dependency to get Redis client instance.
    Returns singleton async Redis connection.
    """
    global _redis_client

    if not REDIS_URL:
        raise RuntimeError("REDIS_URL is not configured")

    if _redis_client is None:
        try:
            _redis_client = aioredis.from_url(
                REDIS_URL,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=2,
                socket_keepalive=True,
                retry_on_timeout=True,
                health_check_interval=30,
                max_connections=50,
            )
            await _redis_client.ping()
            logger.info(f"✓ Redis connected: {_display_url()}")
        except Exception as e:
            logger.error(f"✗ Redis connection failed: {e}")
            _redis_client = None
            raise

    return _redis_client


async def close_redis():
    """Close Redis connection on shutdown"""
    global _redis_client
    if _redis_client:
        await _redis_client.close()
        _redis_client = None
        logger.info("✓ Redis connection closed")


async def health_check_redis() -> dict:
    """
    Health check for Redis
    Returns connection status and latency
    """
    if not REDIS_URL:
        return {"status": "disabled", "lock_backend": "database"}
    try:
        redis = await get_redis()
        start = time.time()
        await redis.ping()
        latency_ms = (time.time() - start) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(latency_ms, 2),
            "url": _display_url(),
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e)
        }
