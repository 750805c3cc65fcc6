"""
Dispatch Engine - Distributed Locks.

============================================================
PURPOSE
============================================================
Short-lived named locks with a TTL, used to serialize order
creation per requester.

IMPLEMENTATIONS:
- InMemoryLockProvider: single process
- RedisLockProvider: SET NX EX, token-checked release

A lock held by a crashed holder disappears after its TTL.

============================================================
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import redis.asyncio as redis_async

from .clock import ClockProtocol, SystemClock


logger = logging.getLogger(__name__)


# Delete the key only if it still holds our token
RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class LockProvider(ABC):
    """Abstract TTL lock."""

    @abstractmethod
    async def acquire(self, key: str, ttl_seconds: int) -> Optional[str]:
        """
        Try to take the lock without waiting.

        Returns:
            Ownership token, or None if the lock is held
        """
        pass

    @abstractmethod
    async def release(self, key: str, token: str) -> bool:
        """Release the lock if `token` still owns it."""
        pass

    async def close(self) -> None:
        pass


# ============================================================
# IN-MEMORY LOCKS
# ============================================================

class InMemoryLockProvider(LockProvider):
    """Process-local locks with clock-based expiry."""

    def __init__(self, clock: Optional[ClockProtocol] = None):
        self._clock = clock or SystemClock()
        self._locks: Dict[str, Tuple[str, datetime]] = {}
        self._mutex = asyncio.Lock()

    async def acquire(self, key: str, ttl_seconds: int) -> Optional[str]:
        async with self._mutex:
            now = self._clock.now()
            held = self._locks.get(key)
            if held is not None and held[1] > now:
                return None
            token = str(uuid.uuid4())
            self._locks[key] = (token, now + timedelta(seconds=ttl_seconds))
            return token

    async def release(self, key: str, token: str) -> bool:
        async with self._mutex:
            held = self._locks.get(key)
            if held is None or held[0] != token:
                return False
            del self._locks[key]
            return True

    def is_held(self, key: str) -> bool:
        held = self._locks.get(key)
        return held is not None and held[1] > self._clock.now()


# ============================================================
# REDIS LOCKS
# ============================================================

class RedisLockProvider(LockProvider):
    """
    Locks stored in Redis.

    Shared by every engine instance pointing at the same Redis.
    """

    def __init__(self, client: Any, key_prefix: str = "dispatch:"):
        """
        Initialize provider.

        Args:
            client: redis.asyncio client
            key_prefix: Namespace for lock keys
        """
        self._client = client
        self._key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "dispatch:") -> "RedisLockProvider":
        client = redis_async.from_url(url, decode_responses=True)
        return cls(client, key_prefix=key_prefix)

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def acquire(self, key: str, ttl_seconds: int) -> Optional[str]:
        token = str(uuid.uuid4())
        acquired = await self._client.set(self._key(key), token, nx=True, ex=ttl_seconds)
        if not acquired:
            return None
        return token

    async def release(self, key: str, token: str) -> bool:
        released = await self._client.eval(RELEASE_SCRIPT, 1, self._key(key), token)
        if not released:
            logger.warning(f"Lock {key} expired or was taken over before release")
        return bool(released)

    async def close(self) -> None:
        await self._client.aclose()
