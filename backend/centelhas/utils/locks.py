"""Per-table locks serializing lifecycle transitions and table operations.

Two tables of the same event never share a lock, so they proceed
concurrently; two operations on one table always run one after the other.

- ``RedisTableLockManager``: cross-process lock (SET NX PX + owner-checked release)
- ``LocalTableLockManager``: in-process ``asyncio.Lock`` per table

Both give up after a bounded wait with ``LockAcquisitionError``, which is a
``ConflictError`` and therefore retried by the transaction runner.

Lock keys:
- lock:centelhas:event:{event_id}:table:{table_id}
"""

import asyncio
import hashlib
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Protocol
from uuid import uuid4

import redis.asyncio as redis

from centelhas.errors import ConflictError


@dataclass
class LockInfo:
    """Lock metadata."""

    lock_key: str
    owner_id: str
    acquired_at: float
    expires_at: float


class LockAcquisitionError(ConflictError):
    """Failed to acquire a table lock within the bounded wait."""

    def __init__(self, lock_key: str, waited_ms: int):
        super().__init__(
            message=f"Failed to acquire lock {lock_key} within {waited_ms}ms",
            details={"lockKey": lock_key, "waitedMs": waited_ms},
        )


def make_table_lock_key(event_id: int, table_id: int) -> str:
    return f"lock:centelhas:event:{event_id}:table:{table_id}"


class TableLockManager(Protocol):
    def lock(self, event_id: int, table_id: int): ...


class RedisTableLockManager:
    """Redis-based table lock.

    SET NX PX acquires atomically with an expiry so a crashed holder cannot
    block a table forever; release runs a Lua script that only deletes the
    key when the caller still owns it.
    """

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

        self._instance_id = str(uuid4())
        self._release_script = None

    def _ensure_script(self) -> None:
        if self._release_script is None:
            self._release_script = self.redis.register_script(self.RELEASE_LOCK_SCRIPT)

    def _make_owner_token(self) -> str:
        raw = f"{self._instance_id}:{time.time_ns()}:{uuid4().hex[:8]}"
        return hashlib.sha256(raw.encode()).hexdigest()[:32]

    async def acquire(self, event_id: int, table_id: int) -> LockInfo:
        """Acquire the table lock, polling until ``acquire_timeout_ms``.

        Raises:
            LockAcquisitionError: If the lock is still held after the wait
        """
        self._ensure_script()

        lock_key = make_table_lock_key(event_id, table_id)
        owner_token = self._make_owner_token()
        start_ms = time.monotonic() * 1000

        while True:
            acquired = await self.redis.set(
                lock_key,
                owner_token,
                nx=True,
                px=self.lock_timeout_ms,
            )
            if acquired:
                now = time.time()
                return LockInfo(
                    lock_key=lock_key,
                    owner_id=owner_token,
                    acquired_at=now,
                    expires_at=now + self.lock_timeout_ms / 1000,
                )

            elapsed = time.monotonic() * 1000 - start_ms
            if elapsed >= self.acquire_timeout_ms:
                raise LockAcquisitionError(lock_key, self.acquire_timeout_ms)

            await asyncio.sleep(self.retry_interval_ms / 1000)

    async def release(self, lock_info: LockInfo) -> bool:
        """Release the lock if still owned. False when it expired meanwhile."""
        self._ensure_script()
        result = await self._release_script(
            keys=[lock_info.lock_key],
            args=[lock_info.owner_id],
        )
        return result == 1

    @asynccontextmanager
    async def lock(self, event_id: int, table_id: int) -> AsyncGenerator[LockInfo, None]:
        lock_info = await self.acquire(event_id, table_id)
        try:
            yield lock_info
        finally:
            await self.release(lock_info)


class LocalTableLockManager:
    """In-process table locks for single-worker deployments and tests."""

    def __init__(self, acquire_timeout_ms: int = 5000):
        self.acquire_timeout_ms = acquire_timeout_ms
        self._locks: dict[str, asyncio.Lock] = {}

    def _get_lock(self, lock_key: str) -> asyncio.Lock:
        if lock_key not in self._locks:
            self._locks[lock_key] = asyncio.Lock()
        return self._locks[lock_key]

    def is_locked(self, event_id: int, table_id: int) -> bool:
        lock = self._locks.get(make_table_lock_key(event_id, table_id))
        return lock is not None and lock.locked()

    def discard(self, event_id: int, table_id: int) -> bool:
        """Drop the lock of a closed table. Kept while someone holds it."""
        lock_key = make_table_lock_key(event_id, table_id)
        lock = self._locks.get(lock_key)
        if lock is None or lock.locked():
            return False
        del self._locks[lock_key]
        return True

    @asynccontextmanager
    async def lock(self, event_id: int, table_id: int) -> AsyncGenerator[LockInfo, None]:
        lock_key = make_table_lock_key(event_id, table_id)
        table_lock = self._get_lock(lock_key)

        try:
            await asyncio.wait_for(
                table_lock.acquire(),
                timeout=self.acquire_timeout_ms / 1000,
            )
        except asyncio.TimeoutError as exc:
            raise LockAcquisitionError(lock_key, self.acquire_timeout_ms) from exc

        now = time.time()
        try:
            yield LockInfo(
                lock_key=lock_key,
                owner_id="local",
                acquired_at=now,
                expires_at=float("inf"),
            )
        finally:
            table_lock.release()
