# /chatflow/services/cache_service.py

import json
import logging
from typing import Any, Dict, List, Optional, Tuple
import redis.asyncio as redis

from chatflow.config.settings import settings
from chatflow.models.flow import utcnow
from chatflow.utils.circuit_breaker import CircuitBreaker
from chatflow.utils.metrics import cache_operations

# This service manages all interactions with Redis: plain cache reads/writes,
# set-once keys used as idempotency ledgers, and pub/sub live updates.

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

    async def get(self, key: str) -> Optional[str]:
        if not self.redis: return None
        try:
            result = await self.circuit_breaker.call(self.redis.get, key)
            cache_operations.labels(operation="get", status="hit" if result else "miss").inc()
            return result.decode('utf-8') if result else None
        except Exception as e:
            cache_operations.labels(operation="get", status="error").inc()
            logger.warning(f"Cache get failed for key {key}: {e}")
            return None

    async def set(self, key: str, value: str, ttl: int = 300):
        if not self.redis: return
        try:
            await self.circuit_breaker.call(self.redis.setex, key, ttl, value)
            cache_operations.labels(operation="set", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="set", status="error").inc()
            logger.warning(f"Cache set failed for key {key}: {e}")

    async def set_once(self, key: str, ttl: int) -> bool:
        """
        Returns True the first time a key is claimed within its TTL, False
        afterwards. When Redis is unavailable the claim succeeds, so work is
        repeated rather than lost.
        """
        if not self.redis: return True
        try:
            claimed = await self.circuit_breaker.call(self.redis.set, key, "1", ex=ttl, nx=True)
            cache_operations.labels(operation="set_once", status="claimed" if claimed else "duplicate").inc()
            return bool(claimed)
        except Exception as e:
            cache_operations.labels(operation="set_once", status="error").inc()
            logger.warning(f"Cache set_once failed for key {key}: {e}")
            return True

    async def release(self, key: str):
        """Drops a set-once claim so the guarded work can be attempted again."""
        if not self.redis: return
        try:
            await self.circuit_breaker.call(self.redis.delete, key)
            cache_operations.labels(operation="release", status="success").inc()
        except Exception as e:
            cache_operations.labels(operation="release", status="error").inc()
            logger.warning(f"Cache release failed for key {key}: {e}")

    async def publish(self, channel: str, payload: Dict[str, Any]):
        if not self.redis: return
        try:
            await self.redis.publish(channel, json.dumps(payload, default=str))
        except Exception as e:
            cache_operations.labels(operation="publish", status="error").inc()
            logger.warning(f"Publish to {channel} failed: {e}")

    async def ping(self) -> bool:
        if not self.redis: return False
        try:
            return bool(await self.redis.ping())
        except Exception:
            return False

    async def close(self):
        if self.redis:
            await self.redis.aclose()


class MemoryCacheService:
    """Single-process stand-in with the same interface, used by the memory backend."""

    def __init__(self, clock=None):
        self.clock = clock or utcnow
        self.values: Dict[str, Tuple[str, float]] = {}
        self.published: List[Tuple[str, Dict[str, Any]]] = []
        self.redis = None

    def _expired(self, key: str) -> bool:
        entry = self.values.get(key)
        return entry is None or entry[1] <= self.clock().timestamp()

    async def get(self, key: str) -> Optional[str]:
        return None if self._expired(key) else self.values[key][0]

    async def set(self, key: str, value: str, ttl: int = 300):
        self.values[key] = (value, self.clock().timestamp() + ttl)

    async def set_once(self, key: str, ttl: int) -> bool:
        if not self._expired(key):
            return False
        await self.set(key, "1", ttl)
        return True

    async def release(self, key: str):
        self.values.pop(key, None)

    async def publish(self, channel: str, payload: Dict[str, Any]):
        self.published.append((channel, payload))

    async def ping(self) -> bool:
        return True

    async def close(self):
        pass


# Globally accessible instance
cache_service = CacheService(settings.redis_url)
