"""
Object cache backends for NodeDB.

- base: Cache protocol, CacheError and create_cache factory
- memory: Process-local cache
- redis_cache: Redis-backed cache
"""

from .base import Cache, CacheError, create_cache
from .memory import MemoryCache
from .redis_cache import RedisCache

__all__ = ["Cache", "CacheError", "MemoryCache", "RedisCache", "create_cache"]
