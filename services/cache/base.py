# services/cache/base.py
from abc import ABC, abstractmethod
from typing import Optional, Any

class CacheStore(ABC):
    """Abstract base class that defines the interface for key-value cache implementations.

    Values are JSON-serializable objects. Every write replaces the whole value.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the value stored under key, or None on a miss."""
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Store value under key for ttl_seconds. Returns False when the store is unavailable."""
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a single key."""
        pass

    @abstractmethod
    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern (e.g. 'ado:query:*'). Returns the count deleted."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the backing store can be reached."""
        pass
