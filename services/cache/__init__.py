# services/cache/__init__.py
from .base import CacheStore
from .memory_cache import MemoryCache
from .redis_cache import RedisCache
from services.constants import CACHE_PROVIDER

def get_cache() -> CacheStore:
    """
    Factory function to get the appropriate cache instance based on environment configuration.
    Returns either a RedisCache or MemoryCache instance based on the CACHE_PROVIDER environment variable.
    """
    provider = CACHE_PROVIDER.lower()

    if provider == "redis":
        return RedisCache()
    elif provider == "memory":
        return MemoryCache()
    else:
        raise ValueError(f"Unknown CACHE_PROVIDER={provider}")
