"""
In-memory cache implementation.

This module provides a process-local cache for:
- Unit and integration tests
- Single-process deployments without Redis

Invariants:
    - All data is lost on process exit
    - Expired entries are never returned
    - Thread-safe for concurrent access
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class MemoryCache:
    """In-memory implementation of the Cache protocol.

    Attributes:
        hits: Number of successful lookups
        misses: Number of failed lookups

    Example:
        >>> cache = MemoryCache()
        >>> cache.set("person:1", b"{...}", 60)
        >>> cache.get("person:1")
        b'{...}'
    """

    def __init__(self) -> None:
        self._entries: Dict[str, Tuple[bytes, float]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            value, expires_at = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: bytes, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            return
        with self._lock:
            self._entries[key] = (value, time.monotonic() + ttl_seconds)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.get(key) is not None

    def __len__(self) -> int:
        return len(self._entries)
