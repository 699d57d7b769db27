"""Shared Redis connection for the Redis-backed batch sequencer."""

import logging
from typing import Optional

import redis.asyncio as redis

from nursery.config import settings

logger = logging.getLogger(__name__)

_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Return the process-wide client, creating it from REDIS_URL on first use."""
    global _client
    if _client is None:
        _client = redis.from_url(settings.redis_url, decode_responses=True)
        logger.info("Redis client created for sequencing")
    return _client


async def close_redis():
    """Drop the shared client.  Called from the scheduler's shutdown."""
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
