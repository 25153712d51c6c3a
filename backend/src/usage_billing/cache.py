"""Cache components for catalog lookups such as model pricing.

Caches are injected into the components that use them rather than held in
module globals, so tests can hand in an InMemoryCache with known contents.
"""
import json
import time
from typing import Any, Optional

import redis.asyncio as redis
import structlog

from usage_billing.config import settings

logger = structlog.get_logger(__name__)


class Cache:
    """Interface shared by cache backends."""

    async def get(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        raise NotImplementedError

    async def invalidate(self, key: str) -> bool:
        raise NotImplementedError

    async def invalidate_pattern(self, pattern: str) -> int:
        raise NotImplementedError


class InMemoryCache(Cache):
    """Process-local cache with per-key expiry."""

    def __init__(self, default_ttl: int = 300):
        self.default_ttl = default_ttl
        self._store: dict[str, tuple[float, Any]] = {}

    async def get(self, key: str) -> Optional[Any]:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if expires_at < time.monotonic():
            self._store.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        self._store[key] = (time.monotonic() + (ttl or self.default_ttl), value)
        return True

    async def invalidate(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    async def invalidate_pattern(self, pattern: str) -> int:
        prefix = pattern.rstrip("*")
        keys = [k for k in self._store if k.startswith(prefix)]
        for key in keys:
            del self._store[key]
        return len(keys)


class RedisCache(Cache):
    """
    Redis-backed cache.

    Connection and command failures are logged and reported as misses, so a
    Redis outage degrades to database lookups instead of failing requests.
    """

    def __init__(self, redis_url: str | None = None, default_ttl: int | None = None):
        self.redis_url = redis_url or str(settings.redis_url)
        self.default_ttl = default_ttl or settings.model_pricing_cache_ttl
        self.redis_client: Optional[redis.Redis] = None

    async def _ensure_connection(self) -> redis.Redis:
        if self.redis_client is None:
            self.redis_client = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
            )
            logger.info("redis_connected", url=self.redis_url)
        return self.redis_client

    async def get(self, key: str) -> Optional[Any]:
        """
        Get value from cache.

        Args:
            key: Cache key

        Returns:
            Cached value or None if not found/expired/unavailable
        """
        try:
            client = await self._ensure_connection()
            value = await client.get(key)
        except redis.RedisError as e:
            logger.warning("cache_get_failed", key=key, error=str(e))
            return None

        if value is None:
            logger.debug("cache_miss", key=key)
            return None

        logger.debug("cache_hit", key=key)
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """
        Set value in cache.

        Args:
            key: Cache key
            value: Value to cache (JSON serialized if dict/list)
            ttl: Time-to-live in seconds

        Returns:
            True if successful, False otherwise
        """
        ttl = ttl or self.default_ttl
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        try:
            client = await self._ensure_connection()
            await client.setex(key, ttl, value)
        except redis.RedisError as e:
            logger.warning("cache_set_failed", key=key, error=str(e))
            return False

        logger.debug("cache_set", key=key, ttl=ttl)
        return True

    async def invalidate(self, key: str) -> bool:
        try:
            client = await self._ensure_connection()
            result = await client.delete(key)
        except redis.RedisError as e:
            logger.warning("cache_delete_failed", key=key, error=str(e))
            return False
        return bool(result)

    async def invalidate_pattern(self, pattern: str) -> int:
        """
        Invalidate all keys matching a pattern.

        Args:
            pattern: Key pattern (e.g., "model_pricing:*")

        Returns:
            Number of keys deleted
        """
        try:
            client = await self._ensure_connection()
            deleted = 0
            async for key in client.scan_iter(match=pattern):
                await client.delete(key)
                deleted += 1
        except redis.RedisError as e:
            logger.warning("cache_pattern_invalidation_failed", pattern=pattern, error=str(e))
            return 0

        logger.info("cache_pattern_invalidated", pattern=pattern, count=deleted)
        return deleted

    async def ping(self) -> bool:
        try:
            client = await self._ensure_connection()
            return bool(await client.ping())
        except redis.RedisError as e:
            logger.warning("redis_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
