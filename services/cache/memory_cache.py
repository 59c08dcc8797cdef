# ------------------------------
# Module: memory_cache.py
# Description: In-process cache with per-key TTL
# ------------------------------

import copy
import fnmatch
import threading
import time
from typing import Optional, Any, Dict, Tuple

from .base import CacheStore


class MemoryCache(CacheStore):
    """
    Thread-safe dict with expiry. Used when no Redis is configured, and in tests.
    Values are deep-copied in and out so callers never share mutable state.
    """

    def __init__(self):
        self._lock = threading.Lock()
        # key -> (value, expires_at)
        self._items: Dict[str, Tuple[Any, float]] = {}

    def _get_unlocked(self, key: str) -> Optional[Any]:
        item = self._items.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at <= time.time():
            del self._items[key]
            return None
        return value

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            return copy.deepcopy(self._get_unlocked(key))

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        with self._lock:
            self._items[key] = (copy.deepcopy(value), time.time() + ttl_seconds)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._items.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys = [k for k in self._items if fnmatch.fnmatchcase(k, pattern)]
            for k in keys:
                del self._items[k]
            return len(keys)

    def is_available(self) -> bool:
        return True

    def __len__(self) -> int:
        with self._lock:
            now = time.time()
            return sum(1 for _, expires_at in self._items.values() if expires_at > now)
