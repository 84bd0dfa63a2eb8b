"""Per-(tenant, phone) mutual exclusion around read -> transition -> save."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator

from redis.exceptions import LockError

from citizen_api.logging_config import get_logger

logger = get_logger("session_locks")


class SessionLockTimeout(Exception):
    def __init__(self, tenant_id: str, phone_number: str):
        self.tenant_id = tenant_id
        self.phone_number = phone_number
        super().__init__(f"Timed out waiting for session lock {tenant_id}:{phone_number}")


class SessionLockManager(ABC):
    @abstractmethod
    def hold(self, tenant_id: str, phone_number: str):
        """Async context manager holding the lock for one citizen session."""


class InMemorySessionLocks(SessionLockManager):
    def __init__(self):
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._holders: dict[tuple[str, str], int] = {}

    @asynccontextmanager
    async def hold(self, tenant_id: str, phone_number: str) -> AsyncIterator[None]:
        key = (tenant_id, phone_number)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                self._locks.pop(key, None)

    def active_keys(self) -> int:
        return len(self._locks)


class RedisSessionLocks(SessionLockManager):
    """Distributed lock so several receiver instances can share one session store."""

    def __init__(self, redis_client, timeout_seconds: float = 30.0, blocking_timeout_seconds: float = 10.0):
        self.redis = redis_client
        self.timeout_seconds = timeout_seconds
        self.blocking_timeout_seconds = blocking_timeout_seconds

    @asynccontextmanager
    async def hold(self, tenant_id: str, phone_number: str) -> AsyncIterator[None]:
        lock = self.redis.lock(
            f"citizen:lock:{tenant_id}:{phone_number}",
            timeout=self.timeout_seconds,
            blocking_timeout=self.blocking_timeout_seconds,
        )
        acquired = await lock.acquire()
        if not acquired:
            raise SessionLockTimeout(tenant_id, phone_number)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Lock expired while held; the next holder already owns the key.
                logger.warning(
                    "Session lock released after expiry",
                    extra={"context": {"tenant_id": tenant_id, "phone": phone_number, "error": str(e)}},
                )
