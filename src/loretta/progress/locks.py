"""Per-user write locks.

Every facade mutation for a user runs under that user's lock. The in-process
registry is always used; when Redis is configured a Redis lock is taken as
well so that several API processes serialize on the same user.
"""

from __future__ import annotations

import asyncio
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as redis
import structlog
from redis.exceptions import LockError

from loretta.errors import StateError

logger = structlog.get_logger()


class LocalLockRegistry:
    """asyncio.Lock per user id; idle locks are garbage collected."""

    def __init__(self, timeout: float = 10.0) -> None:
        self.timeout = timeout
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock_for(self, user_id: str) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[user_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        lock = self.lock_for(user_id)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning("user_lock_timeout", user_id=user_id, timeout=self.timeout)
            raise StateError("Another update for this user is in progress, retry") from None
        try:
            yield
        finally:
            lock.release()


class RedisLockRegistry(LocalLockRegistry):
    """Local lock plus a Redis lock shared by every process on the same Redis."""

    KEY_PREFIX = "loretta:user-lock:"

    def __init__(self, client: redis.Redis, timeout: float = 10.0) -> None:
        super().__init__(timeout)
        self.client = client

    @asynccontextmanager
    async def hold(self, user_id: str) -> AsyncIterator[None]:
        async with super().hold(user_id):
            lock = self.client.lock(
                f"{self.KEY_PREFIX}{user_id}",
                timeout=self.timeout * 3,
                blocking_timeout=self.timeout,
            )
            if not await lock.acquire():
                logger.warning("user_lock_timeout", user_id=user_id, timeout=self.timeout, backend="redis")
                raise StateError("Another update for this user is in progress, retry")
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError:
                    # expired while held; the row version still guards the write
                    logger.warning("user_lock_expired", user_id=user_id)
