"""Shared Redis client for cross-worker run locks.

Only created when USE_REDIS_LOCKS is on; single-process deployments never
open a connection.
"""

from __future__ import annotations

import redis.asyncio as aioredis

from src.calsync.config import get_settings

_client: aioredis.Redis | None = None


def get_redis_pool() -> aioredis.Redis:
    """Return the process-wide client, connecting lazily on first use."""
    global _client
    if _client is None:
        _client = aioredis.from_url(
            get_settings().REDIS_URL,
            decode_responses=True,
            health_check_interval=30,
        )
    return _client


async def ping_redis() -> str | None:
    """Round-trip a PING. Returns None when healthy, else the failure text."""
    try:
        if await get_redis_pool().ping():
            return None
        return "PING did not return PONG"
    except aioredis.RedisError as exc:
        return str(exc)


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
