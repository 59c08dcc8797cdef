# ------------------------------
# Module: redis_cache.py
# Description: Redis backed cache for query results and conversation state
# ------------------------------

import json
import logging
from typing import Optional, Any
import redis
from services.constants import REDIS_URL, REDIS_SOCKET_TIMEOUT_SECONDS

from .base import CacheStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


class RedisCache(CacheStore):
    """
    Redis is shared with other processes, so no key is assumed to be owned here.
    Every failure is logged and reported as a miss / failed write; callers decide what to fall back to.
    """

    def __init__(self, url: str = REDIS_URL, client: Optional[redis.Redis] = None):
        if client is not None:
            self.client = client
        else:
            logger.info("Creating Redis client")
            self.client = redis.Redis.from_url(
                url,
                decode_responses=True,
                socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
                socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
            )

    def get(self, key: str) -> Optional[Any]:
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis get failed for {key}: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Dropping undecodable cache entry {key}")
            return None

    def set(self, key: str, value: Any, ttl_seconds: int) -> bool:
        try:
            self.client.setex(key, ttl_seconds, json.dumps(value))
            return True
        except (redis.RedisError, TypeError) as e:
            logger.warning(f"Redis set failed for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        try:
            return bool(self.client.delete(key))
        except redis.RedisError as e:
            logger.warning(f"Redis delete failed for {key}: {e}")
            return False

    def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        try:
            for key in self.client.scan_iter(match=pattern, count=500):
                deleted += self.client.delete(key)
        except redis.RedisError as e:
            logger.warning(f"Redis delete_pattern failed for {pattern}: {e}")
        return deleted

    def is_available(self) -> bool:
        try:
            return bool(self.client.ping())
        except redis.RedisError:
            return False
