# /flowbot/utils/locks.py

import asyncio
import logging
import time
import uuid
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from flowbot.config.settings import settings
from flowbot.engine.errors import FlowEngineError
from flowbot.services.cache_service import cache_service
from flowbot.utils.metrics import lock_operations

# Per-contact mutual exclusion so that two inbound messages (or a campaign
# batch and a reply) never step the same conversation at once.

logger = logging.getLogger(__name__)

RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""
EXTEND_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
end
return 0
"""
POLL_INTERVAL = 0.05


class ContactLock:
    """
    Redis `SET key token NX PX ttl` lock with a token-checked release. While
    held, the TTL is pushed forward every third of its length so a long step
    (inline delays, slow sends) never outlives the lock. When Redis is
    unreachable it degrades to in-process asyncio locks, which still
    serialize steps handled by this worker.
    """

    def __init__(self, redis_client, ttl_ms: int, wait_timeout: float, prefix: str = "contact_lock"):
        self.redis = redis_client
        self.ttl_ms = ttl_ms
        self.wait_timeout = wait_timeout
        self.prefix = prefix
        self._local: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    async def _acquire_redis(self, key: str, token: str) -> bool:
        deadline = time.monotonic() + self.wait_timeout
        while True:
            if await self.redis.set(key, token, nx=True, px=self.ttl_ms):
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(POLL_INTERVAL)

    async def _release_redis(self, key: str, token: str):
        try:
            await self.redis.eval(RELEASE_SCRIPT, 1, key, token)
            lock_operations.labels(operation="release", status="success").inc()
        except Exception as e:
            # The TTL frees the key eventually.
            lock_operations.labels(operation="release", status="error").inc()
            logger.warning(f"Failed to release lock {key}: {e}")

    async def _keep_alive(self, key: str, token: str):
        interval = self.ttl_ms / 3000
        while True:
            await asyncio.sleep(interval)
            try:
                extended = await self.redis.eval(EXTEND_SCRIPT, 1, key, token, self.ttl_ms)
            except Exception as e:
                lock_operations.labels(operation="extend", status="error").inc()
                logger.warning(f"Failed to extend lock {key}: {e}")
                continue
            if not extended:
                lock_operations.labels(operation="extend", status="lost").inc()
                logger.error(f"Lock {key} expired while held; another worker may step this contact")
                return
            lock_operations.labels(operation="extend", status="success").inc()

    def _local_lock(self, key: str) -> asyncio.Lock:
        lock = self._local.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._local[key] = lock
        return lock

    @asynccontextmanager
    async def hold(self, name: str) -> AsyncIterator[None]:
        key = self._key(name)
        token = uuid.uuid4().hex

        acquired: Optional[bool] = None
        if self.redis is not None:
            try:
                acquired = await self._acquire_redis(key, token)
            except Exception as e:
                lock_operations.labels(operation="acquire", status="fallback").inc()
                logger.warning(f"Redis lock unavailable for {key}, using in-process lock: {e}")

        if acquired is False:
            lock_operations.labels(operation="acquire", status="timeout").inc()
            raise FlowEngineError(FlowEngineError.TIMEOUT, f"Timed out waiting for lock {key}", retryable=True)

        if acquired:
            lock_operations.labels(operation="acquire", status="success").inc()
            keep_alive = asyncio.create_task(self._keep_alive(key, token))
            try:
                yield
            finally:
                keep_alive.cancel()
                await self._release_redis(key, token)
            return

        lock = self._local_lock(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.wait_timeout)
        except asyncio.TimeoutError:
            lock_operations.labels(operation="acquire", status="timeout").inc()
            raise FlowEngineError(FlowEngineError.TIMEOUT, f"Timed out waiting for lock {key}", retryable=True)
        try:
            yield
        finally:
            lock.release()


# Globally accessible instance
contact_lock = ContactLock(cache_service.redis, settings.lock_ttl_ms, settings.lock_wait_timeout)
