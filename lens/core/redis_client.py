"""
Redis-backed string store with in-memory fallback.

Backs the Result Cache when LENS_CACHE_BACKEND=redis. If Redis is disabled
or unreachable the client degrades to a process-local dictionary; store
failures are logged and read as misses, never raised to the engine.
"""

import logging
import os
import time
from typing import Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)


class RedisClient:
    """
    Redis client wrapper with in-memory fallback.

    Args:
        redis_url: Redis connection URL (defaults to REDIS_URL)
        enabled: Whether Redis is enabled; when False only the fallback is used
        key_prefix: Namespace prepended to every key
    """

    def __init__(self, redis_url: Optional[str] = None, enabled: bool = True, key_prefix: str = "lens:"):
        self.enabled = enabled
        self.redis_url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379")
        self.key_prefix = key_prefix

        self.redis_client: Optional[redis.Redis] = None
        self._fallback_cache: Dict[str, Tuple[str, Optional[float]]] = {}  # key -> (value, expiry)

        if self.enabled:
            if self.redis_url.startswith(("redis://", "rediss://", "unix://")):
                try:
                    self.redis_client = redis.Redis.from_url(
                        self.redis_url,
                        decode_responses=True,
                        socket_connect_timeout=2,
                        socket_timeout=2,
                    )
                    self.redis_client.ping()
                    logger.info("Redis client initialized successfully")
                except redis.RedisError as e:
                    logger.warning(f"Failed to connect to Redis: {e}. Using fallback cache.")
                    self.enabled = False
                    self.redis_client = None
            else:
                logger.warning(f"Invalid Redis URL format: {self.redis_url}")
                self.enabled = False
        else:
            logger.debug("Redis disabled, using fallback cache")

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get(self, key: str) -> Optional[str]:
        """Return the cached value, or None if missing, expired or unreadable."""
        if self.enabled and self.redis_client:
            try:
                return self.redis_client.get(self._key(key))
            except redis.RedisError as e:
                logger.debug(f"Redis get failed for key {key}: {e}, using fallback")

        if key in self._fallback_cache:
            value, expiry = self._fallback_cache[key]
            if expiry is None or time.monotonic() < expiry:
                return value
            del self._fallback_cache[key]

        return None

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> bool:
        """
        Store a value; `ttl_seconds=None` means no expiry.

        Returns False when Redis is enabled but the write only reached the
        in-memory fallback.
        """
        stored = True
        if self.enabled and self.redis_client:
            try:
                if ttl_seconds:
                    self.redis_client.setex(self._key(key), ttl_seconds, value)
                else:
                    self.redis_client.set(self._key(key), value)
                return True
            except redis.RedisError as e:
                logger.warning(f"Redis set failed for key {key}: {e}, using fallback")
                stored = False

        expiry = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._fallback_cache[key] = (value, expiry)

        # Periodic sweep of expired entries
        if len(self._fallback_cache) > 1000:
            now = time.monotonic()
            expired_keys = [
                k for k, (_, exp) in self._fallback_cache.items()
                if exp is not None and now >= exp
            ]
            for k in expired_keys:
                del self._fallback_cache[k]
        return stored

    def delete(self, key: str) -> bool:
        """Delete key from cache. Returns False if Redis could not be reached."""
        deleted = True
        if self.enabled and self.redis_client:
            try:
                self.redis_client.delete(self._key(key))
            except redis.RedisError as e:
                logger.warning(f"Redis delete failed for key {key}: {e}")
                deleted = False

        self._fallback_cache.pop(key, None)
        return deleted

    def is_available(self) -> bool:
        """Check if Redis is available and working."""
        if not self.enabled or not self.redis_client:
            return False
        try:
            self.redis_client.ping()
            return True
        except redis.RedisError:
            return False
