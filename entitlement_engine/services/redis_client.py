"""
Redis Connection
================

Shared ``redis.asyncio`` client for the webhook ingest stream.
"""

import logging
from typing import Optional

import redis.asyncio as redis
from redis.asyncio import Redis

from entitlement_engine.config import settings

logger = logging.getLogger(__name__)

# Global Redis client instance
_redis_client: Optional[Redis] = None


async def init_redis() -> Redis:
    """Initialize the connection pool and pre-warm a connection."""
    global _redis_client

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
        # Force a real connection so the first enqueue doesn't pay the handshake
        await _redis_client.ping()
        logger.info("Redis connection established")

    return _redis_client


async def get_redis() -> Redis:
    """Get Redis client, initializing if necessary."""
    if _redis_client is None:
        return await init_redis()
    return _redis_client


async def close_redis() -> None:
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")
