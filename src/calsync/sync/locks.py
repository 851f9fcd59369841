"""Per-config run locks -- stop two runs for the same config from overlapping.

Two implementations behind one small interface:
- LocalRunLock: asyncio.Lock per key, for a single worker process
- RedisRunLock: SET NX PX with a token and compare-and-delete release, for
  multiple workers sharing one Redis
"""

from __future__ import annotations

import asyncio
import uuid
from abc import ABC, abstractmethod

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger(__name__)

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class RunLock(ABC):
    """Non-blocking mutual exclusion keyed by config id."""

    @abstractmethod
    async def try_acquire(self, key: str) -> bool:
        """Take the lock if free. Never waits."""
        ...

    @abstractmethod
    async def release(self, key: str) -> None:
        ...

    @abstractmethod
    async def is_locked(self, key: str) -> bool:
        ...


class LocalRunLock(RunLock):
    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    async def try_acquire(self, key: str) -> bool:
        lock = self._locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            return False
        await lock.acquire()
        return True

    async def release(self, key: str) -> None:
        lock = self._locks.get(key)
        if lock is not None and lock.locked():
            lock.release()

    async def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class RedisRunLock(RunLock):
    """Redis-backed lock with an expiry so a crashed worker cannot hold it forever.

    Args:
        redis: Shared async Redis client.
        ttl_seconds: Lock lifetime; should exceed the longest expected run.
        prefix: Key namespace.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl_seconds: int = 1800,
        prefix: str = "calsync:run-lock:",
    ) -> None:
        self._redis = redis
        self._ttl_ms = ttl_seconds * 1000
        self._prefix = prefix
        self._tokens: dict[str, str] = {}

    async def try_acquire(self, key: str) -> bool:
        token = uuid.uuid4().hex
        acquired = await self._redis.set(
            self._prefix + key, token, nx=True, px=self._ttl_ms
        )
        if acquired:
            self._tokens[key] = token
            return True
        return False

    async def release(self, key: str) -> None:
        token = self._tokens.pop(key, None)
        if token is None:
            return
        released = await self._redis.eval(_RELEASE_SCRIPT, 1, self._prefix + key, token)
        if not released:
            logger.warning("run_lock.expired_before_release", key=key)

    async def is_locked(self, key: str) -> bool:
        return bool(await self._redis.exists(self._prefix + key))
