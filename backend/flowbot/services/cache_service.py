# /flowbot/services/cache_service.py

import json
import logging
from typing import Any, Optional
import redis.asyncio as redis

from flowbot.config.settings import settings
from flowbot.utils.circuit_breaker import CircuitBreaker
from flowbot.utils.metrics import cache_operations

# Redis access for the state cache tier and webhook deduplication. Every
# failure is logged and swallowed: the cache is an accelerator, never the
# source of truth.

logger = logging.getLogger(__name__)


class CacheService:
    def __init__(self, redis_url: str):
        try:
            self.redis_pool = redis.ConnectionPool.from_url(redis_url, max_connections=20)
            self.redis = redis.Redis(connection_pool=self.redis_pool)
            self.circuit_breaker = CircuitBreaker("redis")
        except Exception as e:
            logger.critical(f"Failed to connect to Redis at {redis_url}: {e}")
            self.redis = None
            self.circuit_breaker = CircuitBreaker("redis")

    async def get(self, key: str) -> Optional[str]:
        if not self.redis: return None
        try:
            result = await self.circuit_breaker.call(self.redis.get, key)
            cache_operations.labels(operation="get", status="hit" if result else "miss").inc()
            return result.decode('utf-8') if isinstance(result, bytes) else result
        except Exception as e:
            cache_operations.labels(operation="get", status="error").inc()
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int = 300) -> bool:
        if not self.redis: return False
        try:
            await self.circuit_breaker.call(self.redis.setex, key, ttl, value)
            cache_operations.labels(operation="set", status="success").inc()
            return True
        except Exception as e:
            cache_operations.labels(operation="set", status="error").inc()
            logger.warning(f"Cache set failed for key {key}: {e}")
            return False

    async def set_if_absent(self, key: str, value: str, ttl: int) -> Optional[bool]:
        """SET NX EX. True when the key was created, False when it existed, None when Redis is unreachable."""
        if not self.redis: return None
        try:
            created = await self.circuit_breaker.call(self.redis.set, key, value, nx=True, ex=ttl)
            cache_operations.labels(operation="set_nx", status="success").inc()
            return bool(created)
        except Exception as e:
            cache_operations.labels(operation="set_nx", status="error").inc()
            logger.warning(f"Cache set_if_absent failed for key {key}: {e}")
            return None

    async def delete(self, key: str) -> bool:
        if not self.redis: return False
        try:
            await self.circuit_breaker.call(self.redis.delete, key)
            cache_operations.labels(operation="delete", status="success").inc()
            return True
        except Exception as e:
            cache_operations.labels(operation="delete", status="error").inc()
            logger.warning(f"Cache delete failed for key {key}: {e}")
            return False

    async def get_json(self, key: str) -> Optional[Any]:
        cached_value = await self.get(key)
        if cached_value is None:
            return None
        try:
            return json.loads(cached_value)
        except json.JSONDecodeError:
            logger.warning(f"Discarding unreadable cache entry {key}")
            await self.delete(key)
            return None

    async def set_json(self, key: str, value: Any, ttl: int = 300) -> bool:
        return await self.set(key, json.dumps(value, default=str), ttl)

    async def health_check(self) -> bool:
        if not self.redis: return False
        try:
            return bool(await self.redis.ping())
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def close(self):
        if self.redis:
            await self.redis.aclose()


# Globally accessible instance
cache_service = CacheService(settings.redis_url)
