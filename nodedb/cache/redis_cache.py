"""
Redis cache implementation.

Stores engine cache entries with SETEX so Redis expires them.

Invariants:
    - One client per RedisCache; the client pools its own connections
    - Redis errors surface as CacheError, chained to the client error
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import redis

from .base import CacheError

logger = logging.getLogger(__name__)


class RedisCache:
    """Redis-backed implementation of the Cache protocol.

    Example:
        >>> cache = RedisCache("redis://localhost:6379/0")
        >>> cache.set("abc", b"{}", 300)
    """

    def __init__(self, redis_url: str, *, key_prefix: str = "nodedb:", client: Any = None) -> None:
        """Initialize the cache.

        Args:
            redis_url: Redis URL
            key_prefix: Prefix added to every key
            client: Pre-built client (tests)
        """
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self._client = client if client is not None else redis.Redis.from_url(redis_url)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}{key}"

    def get(self, key: str) -> Optional[bytes]:
        try:
            return self._client.get(self._key(key))
        except redis.RedisError as exc:
            raise CacheError(f"Redis GET failed for {key}: {exc}") from exc

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        try:
            self._client.setex(self._key(key), ttl_seconds, value)
        except redis.RedisError as exc:
            raise CacheError(f"Redis SETEX failed for {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete(self._key(key))
        except redis.RedisError as exc:
            raise CacheError(f"Redis DELETE failed for {key}: {exc}") from exc

    def close(self) -> None:
        self._client.close()
        logger.debug("Redis cache closed", extra={"redis_url": self.redis_url})
