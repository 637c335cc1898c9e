"""
Base protocol for the NodeDB object cache.

The persistence engine uses the cache aside the backing store: reads
check the cache first, saves overwrite the entry, removes purge it.
Entries are opaque bytes (JSON-encoded attribute maps).

Invariants:
    - Keys are ``<entity>:<id>``, or the bare id for GUID primary keys
    - A cache failure never corrupts the backing store; the store is
      the source of truth
    - TTL of 0 means "do not cache"

How to change safely:
    - Protocol changes require updating all implementations
    - Keep values opaque; serialization belongs to the engine
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

from ..errors import NodeDbError

if TYPE_CHECKING:
    from ..config import Settings

logger = logging.getLogger(__name__)


class CacheError(NodeDbError):
    """Cache backend failure."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="CACHE_ERROR")


@runtime_checkable
class Cache(Protocol):
    """Protocol for object cache backends.

    Example:
        >>> cache = MemoryCache()
        >>> cache.set("abc", b"{}", 300)
        >>> cache.get("abc")
        b'{}'
    """

    @abstractmethod
    def get(self, key: str) -> Optional[bytes]:
        """Return the cached bytes, or None on a miss."""
        ...

    @abstractmethod
    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        """Store bytes under key for ttl_seconds."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        """Remove the entry; missing keys are not an error."""
        ...

    @abstractmethod
    def close(self) -> None:
        """Release client resources."""
        ...


def create_cache(settings: "Settings") -> Optional[Cache]:
    """Factory function to create a cache from configuration.

    Returns:
        RedisCache when ``redis_url`` is configured, else None (caching off)
    """
    if not settings.redis_url or settings.cache_ttl == 0:
        return None
    from .redis_cache import RedisCache

    return RedisCache(settings.redis_url)
