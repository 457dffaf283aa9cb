"""Per-doctor locks that single-flight OAuth token refreshes."""

import asyncio
import logging
import random
import uuid
from contextlib import asynccontextmanager
from typing import Dict

logger = logging.getLogger(__name__)

LOCK_TTL_MS = 10000

# Lua script for atomic compare-and-delete
COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
else
  return 0
end
"""


class RefreshLock:
    """Abstract per-key mutual exclusion."""

    def acquire(self, doctor_id: str):
        """Async context manager holding the lock for doctor_id."""
        raise NotImplementedError


class LocalRefreshLock(RefreshLock):
    """In-process lock: one asyncio.Lock per doctor."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, doctor_id: str) -> asyncio.Lock:
        lock = self._locks.get(doctor_id)
        if lock is None:
            lock = self._locks[doctor_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def acquire(self, doctor_id: str):
        async with self._lock_for(doctor_id):
            yield


class RedisRefreshLock(RefreshLock):
    """Refresh lock shared by every process pointed at the same Redis."""

    KEY_PREFIX = "calendar_refresh_lock"

    def __init__(self, redis_client, ttl_ms: int = LOCK_TTL_MS, max_retries: int = 8,
                 backoff_seconds: float = 0.05):
        """
        Args:
            redis_client: Synchronous Redis client (redis-py)
            ttl_ms: Expiry of a held lock, so a crashed holder cannot wedge refreshes
            max_retries: Extra claim attempts while another process holds the lock
            backoff_seconds: Base wait, grows linearly with each attempt plus up to one base of jitter
        """
        self.redis = redis_client
        self.ttl_ms = ttl_ms
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    def _claim(self, key: str, owner: str) -> bool:
        return bool(self.redis.set(key, owner, nx=True, px=self.ttl_ms))

    def _release(self, key: str, owner: str) -> None:
        try:
            self.redis.eval(COMPARE_AND_DELETE, 1, key, owner)
        except Exception as e:
            # The TTL expires the key anyway
            logger.warning(f"Could not release {key}: {e}")

    @asynccontextmanager
    async def acquire(self, doctor_id: str):
        """
        Hold the doctor's refresh lock for the duration of the block.

        Raises:
            RuntimeError: Lock still held elsewhere after max_retries waits
        """
        key = f"{self.KEY_PREFIX}:{doctor_id}"
        owner = uuid.uuid4().hex

        attempt = 0
        while not self._claim(key, owner):
            if attempt >= self.max_retries:
                raise RuntimeError(f"Refresh lock busy for doctor {doctor_id} after {self.max_retries} retries")
            attempt += 1
            await asyncio.sleep(self.backoff_seconds * attempt + random.uniform(0, self.backoff_seconds))

        logger.debug(f"Holding {key} after {attempt} waits")
        try:
            yield
        finally:
            self._release(key, owner)
