"""
Connection Locks
================

Per-connection try-locks that guarantee at most one sync run per connection
at a time. Acquisition never waits: a held lock means the caller reports the
connection as busy.

Implementations:
- InMemoryLockRegistry: single process, a set of held keys
- RedisLockRegistry: multiple processes, ``SET NX PX`` with a token so only
  the holder can release
"""

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Dict, Optional, Set
from uuid import uuid4

import redis.asyncio as aioredis
import structlog

from .config import settings
from .exceptions import BusyError

logger = structlog.get_logger(__name__)

# Delete the key only if it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockRegistry(ABC):
    """Try-lock registry keyed by connection id."""

    @abstractmethod
    async def try_acquire(self, connection_id: str) -> bool:
        """Take the lock if free; returns False immediately if held."""

    @abstractmethod
    async def release(self, connection_id: str) -> None:
        """Release a lock held by this registry."""

    @abstractmethod
    async def is_held(self, connection_id: str) -> bool:
        """Whether any holder currently owns the lock."""

    @asynccontextmanager
    async def hold(self, connection_id: str):
        """
        Hold the lock for the duration of the block.

        Raises:
            BusyError: If the lock is already held
        """
        if not await self.try_acquire(connection_id):
            raise BusyError(connection_id)
        try:
            yield
        finally:
            await self.release(connection_id)

    async def close(self):
        pass


class InMemoryLockRegistry(LockRegistry):
    """Locks for a single event loop."""

    def __init__(self):
        self._held: Set[str] = set()

    async def try_acquire(self, connection_id: str) -> bool:
        # No await between check and add, so this is atomic on one loop
        if connection_id in self._held:
            return False
        self._held.add(connection_id)
        return True

    async def release(self, connection_id: str) -> None:
        self._held.discard(connection_id)

    async def is_held(self, connection_id: str) -> bool:
        return connection_id in self._held


class RedisLockRegistry(LockRegistry):
    """
    Distributed locks stored in Redis.

    Each lock expires after ``ttl_seconds`` so a crashed holder cannot block
    a connection forever. The TTL must exceed the longest possible run.
    """

    def __init__(
        self,
        redis_url: str = None,
        ttl_seconds: int = None,
        key_prefix: str = "channel_sync:lock",
        redis: Optional[aioredis.Redis] = None
    ):
        """
        Initialize the registry.

        Args:
            redis_url: Redis connection URL
            ttl_seconds: Lock expiry in seconds
            key_prefix: Prefix for Redis keys
            redis: Pre-built client (used by tests)
        """
        self.redis_url = redis_url or settings.REDIS_URL
        self.ttl_seconds = ttl_seconds or settings.LOCK_TTL_SECONDS
        self.key_prefix = key_prefix
        self._redis = redis
        self._tokens: Dict[str, str] = {}
        self._guard = asyncio.Lock()

    async def get_redis(self) -> aioredis.Redis:
        """Get or create Redis connection."""
        if self._redis is None:
            self._redis = aioredis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True
            )
        return self._redis

    async def close(self):
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()

    def _key(self, connection_id: str) -> str:
        return f"{self.key_prefix}:{connection_id}"

    async def try_acquire(self, connection_id: str) -> bool:
        redis = await self.get_redis()
        token = uuid4().hex

        async with self._guard:
            if connection_id in self._tokens:
                return False
            acquired = await redis.set(
                self._key(connection_id),
                token,
                nx=True,
                px=int(self.ttl_seconds * 1000)
            )
            if not acquired:
                return False
            self._tokens[connection_id] = token

        return True

    async def release(self, connection_id: str) -> None:
        token = self._tokens.pop(connection_id, None)
        if token is None:
            return

        redis = await self.get_redis()
        released = await redis.eval(RELEASE_SCRIPT, 1, self._key(connection_id), token)
        if not released:
            logger.warning(
                "Connection lock expired before release",
                connection_id=connection_id,
                ttl_seconds=self.ttl_seconds
            )

    async def is_held(self, connection_id: str) -> bool:
        if connection_id in self._tokens:
            return True
        redis = await self.get_redis()
        return bool(await redis.exists(self._key(connection_id)))
