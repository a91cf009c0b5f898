"""
Connection to the quote cache.

An external market data feed writes option quotes into Redis; this service
only reads them. The connection is opened in the app lifespan and is
optional: without it the price oracle serves the static fallback table.
"""

from typing import Optional
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_quote_cache: Optional[aioredis.Redis] = None


async def init_redis(url: str, timeout: float = 2.0) -> aioredis.Redis:
    """Connect and verify with a PING; raises if the cache is unreachable."""
    global _quote_cache
    client = aioredis.from_url(
        url,
        decode_responses=True,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )
    try:
        await client.ping()
    except RedisError:
        await client.aclose()
        raise
    _quote_cache = client
    return client


def get_redis_client() -> Optional[aioredis.Redis]:
    return _quote_cache


async def redis_healthy() -> bool:
    if _quote_cache is None:
        return False
    try:
        return bool(await _quote_cache.ping())
    except RedisError as e:
        logger.warning(f"Quote cache ping failed: {e}")
        return False


async def close_redis() -> None:
    global _quote_cache
    if _quote_cache is not None:
        await _quote_cache.aclose()
        _quote_cache = None
