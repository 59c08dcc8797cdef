import fnmatch
import json
import time

import redis

from services.cache import MemoryCache, RedisCache


class FakeRedis:
    """Just enough of redis.Redis for RedisCache."""

    def __init__(self, fail=False):
        self.store = {}
        self.ttls = {}
        self.fail = fail

    def _check(self):
        if self.fail:
            raise redis.ConnectionError("connection refused")

    def get(self, key):
        self._check()
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self._check()
        return 1 if self.store.pop(key, None) is not None else 0

    def scan_iter(self, match=None, count=None):
        self._check()
        return [k for k in list(self.store) if fnmatch.fnmatchcase(k, match)]

    def ping(self):
        self._check()
        return True


def test_memory_cache_expiry():
    cache = MemoryCache()
    cache.set("a", {"v": 1}, 60)
    cache.set("b", {"v": 2}, 0)

    assert cache.get("a") == {"v": 1}
    assert cache.get("b") is None
    assert len(cache) == 1


def test_memory_cache_copies_values():
    cache = MemoryCache()
    value = {"items": [1]}
    cache.set("a", value, 60)
    value["items"].append(2)

    fetched = cache.get("a")
    fetched["items"].append(3)

    assert cache.get("a") == {"items": [1]}


def test_memory_cache_delete_pattern():
    cache = MemoryCache()
    cache.set("ado:query:one", 1, 60)
    cache.set("ado:query:two", 2, 60)
    cache.set("ado:context:abc", 3, 60)

    assert cache.delete_pattern("ado:query:*") == 2
    assert cache.get("ado:context:abc") == 3
    assert cache.delete("ado:context:abc") is True
    assert cache.delete("ado:context:abc") is False


def test_redis_cache_round_trips_json():
    client = FakeRedis()
    cache = RedisCache(client=client)

    assert cache.set("ado:query:x", [{"id": 1}], 300) is True
    assert json.loads(client.store["ado:query:x"]) == [{"id": 1}]
    assert client.ttls["ado:query:x"] == 300
    assert cache.get("ado:query:x") == [{"id": 1}]
    assert cache.delete_pattern("ado:query:*") == 1
    assert cache.is_available() is True


def test_redis_cache_drops_corrupt_entries():
    client = FakeRedis()
    client.store["bad"] = "{not json"
    assert RedisCache(client=client).get("bad") is None


def test_redis_failures_are_misses():
    cache = RedisCache(client=FakeRedis(fail=True))

    assert cache.get("k") is None
    assert cache.set("k", 1, 60) is False
    assert cache.delete("k") is False
    assert cache.delete_pattern("*") == 0
    assert cache.is_available() is False


def test_unserializable_value_is_a_failed_write():
    cache = RedisCache(client=FakeRedis())
    assert cache.set("k", {"when": time}, 60) is False
