"""
Shared Redis connection for publishers and consumers
"""

import logging
from typing import Optional

import redis.asyncio as redis

from ..config import ServiceConfig

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None


async def get_redis_client(config: Optional[ServiceConfig] = None) -> redis.Redis:
    """
    Return the process-wide Redis client, connecting on first use

    Responses are decoded to ``str`` so stream entries come back as plain
    string dictionaries.
    """
    global _redis_client

    if _redis_client is not None:
        return _redis_client

    config = config or ServiceConfig()
    logger.info(f"Connecting to Redis: {config.redacted_redis_url()}")

    options = {'db': config.redis_db, 'decode_responses': True}
    if config.redis_password:
        options['password'] = config.redis_password

    client = redis.from_url(config.redis_url, **options)
    try:
        await client.ping()
    except Exception as e:
        logger.error(f"Failed to connect to Redis: {e}")
        await client.aclose()
        raise

    _redis_client = client
    logger.info("Redis client ready")
    return client


async def close_redis_client() -> None:
    """Close the process-wide client, if one was opened"""
    global _redis_client

    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis client closed")
