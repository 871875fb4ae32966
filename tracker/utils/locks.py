"""Per-user locks guarding the check-in read-modify-write sequence.

Every mutation of a user's ledger, streak or achievements (check-in, undo,
end-of-day sweep) runs inside ``hold(user_key)``. Two backends:

- ``UserLockManager``: one ``asyncio.Lock`` per user, enough when a single
  process owns the write path.
- ``RedisUserLockManager``: ``SET NX PX`` with an owner token and an atomic
  compare-and-delete release, for several workers sharing one database.

Failing to acquire within the timeout raises ``ConcurrencyConflictError``
so the caller's retry policy applies.
"""

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from functools import lru_cache
from typing import Protocol
from uuid import uuid4

import redis.asyncio as redis

from tracker.config import get_settings
from tracker.logging_config import get_logger
from tracker.utils.errors import ConcurrencyConflictError

logger = get_logger(__name__)


class LockManager(Protocol):
    def hold(self, key: str) -> AbstractAsyncContextManager[None]: ...


class UserLockManager:
    """In-process per-user locks."""

    def __init__(self, acquire_timeout_ms: int = 5000):
        self.acquire_timeout_ms = acquire_timeout_ms
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(
                    lock.acquire(), timeout=self.acquire_timeout_ms / 1000
                )
            except asyncio.TimeoutError as exc:
                logger.warning("user_lock_timeout", lock_key=key)
                raise ConcurrencyConflictError(
                    "Could not acquire user lock, try again",
                    details={"lockKey": key},
                ) from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                # Nobody else waiting; drop the lock so the map stays small
                del self._users[key]
                self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class RedisUserLockManager:
    """Redis-based per-user locks shared across processes."""

    KEY_PREFIX = "tracker:lock:user:"

    # Delete only if we still own the lock
    RELEASE_LOCK_SCRIPT = """
    if redis.call("get", KEYS[1]) == ARGV[1] then
        return redis.call("del", KEYS[1])
    else
        return 0
    end
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        lock_timeout_ms: int = 10000,
        acquire_timeout_ms: int = 5000,
        retry_interval_ms: int = 50,
    ):
        self.redis = redis_client
        self.lock_timeout_ms = lock_timeout_ms
        self.acquire_timeout_ms = acquire_timeout_ms
        self.retry_interval_ms = retry_interval_ms

    def _make_lock_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    async def _acquire(self, lock_key: str, token: str) -> None:
        deadline = time.monotonic() + self.acquire_timeout_ms / 1000
        while True:
            acquired = await self.redis.set(
                lock_key,
                token,
                nx=True,
                px=self.lock_timeout_ms,
            )
            if acquired:
                return
            if time.monotonic() >= deadline:
                logger.warning("user_lock_timeout", lock_key=lock_key)
                raise ConcurrencyConflictError(
                    "Could not acquire user lock, try again",
                    details={"lockKey": lock_key},
                )
            await asyncio.sleep(self.retry_interval_ms / 1000)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock_key = self._make_lock_key(key)
        token = uuid4().hex
        await self._acquire(lock_key, token)
        try:
            yield
        finally:
            released = await self.redis.eval(self.RELEASE_LOCK_SCRIPT, 1, lock_key, token)
            if not released:
                # Expired while held; another worker may already own it
                logger.warning("user_lock_expired_before_release", lock_key=lock_key)


@lru_cache
def get_lock_manager() -> UserLockManager | RedisUserLockManager:
    """Process-wide lock manager chosen from settings."""
    settings = get_settings()
    if settings.redis_url:
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return RedisUserLockManager(
            client,
            lock_timeout_ms=settings.lock_timeout_ms,
            acquire_timeout_ms=settings.lock_acquire_timeout_ms,
        )
    return UserLockManager(acquire_timeout_ms=settings.lock_acquire_timeout_ms)
