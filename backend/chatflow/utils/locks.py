# /chatflow/utils/locks.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict

from redis.exceptions import LockError

from chatflow.engine.errors import SessionBusyError

# Per-session-key execution locks. Everything that advances a cursor (a live
# event, a deferred resume, a group broadcast) runs inside `hold(key)`, so one
# key has a single writer at a time while different keys run in parallel.

logger = logging.getLogger(__name__)


class LocalSessionLocks:
    """
    asyncio locks for a single process. Waiters are woken in arrival order, so
    events for one chat are applied in the order they were received.
    """

    def __init__(self, wait_seconds: float = 30):
        self.wait_seconds = wait_seconds
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self.wait_seconds)
            except asyncio.TimeoutError:
                raise SessionBusyError(f"Timed out waiting for lock on {key}")
            try:
                yield
            finally:
                lock.release()
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)


class RedisSessionLocks:
    """
    Distributed locks shared by every engine instance pointing at the same Redis.

    The lock key expires after `timeout_seconds` so a crashed worker cannot
    hold a chat forever. While a run is in progress a heartbeat resets that
    expiry every third of the timeout, so a slow run keeps its lock.
    """

    def __init__(self, redis_client, timeout_seconds: float = 60, wait_seconds: float = 30):
        self.redis = redis_client
        self.timeout_seconds = timeout_seconds
        self.wait_seconds = wait_seconds

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self.redis.lock(
            f"chatflow:lock:{key}", timeout=self.timeout_seconds, blocking_timeout=self.wait_seconds
        )
        if not await lock.acquire():
            raise SessionBusyError(f"Timed out waiting for lock on {key}")
        heartbeat = asyncio.create_task(self._keep_alive(lock, key))
        try:
            yield
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            try:
                await lock.release()
            except LockError:
                logger.warning(f"Lock on {key} was lost before release")

    async def _keep_alive(self, lock, key: str):
        interval = self.timeout_seconds / 3
        while True:
            await asyncio.sleep(interval)
            try:
                await lock.reacquire()
            except LockError as e:
                logger.error(f"Lost lock on {key} while its run was still executing: {e}")
                return
