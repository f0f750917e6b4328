"""Fail-open JSON cache behaviour."""

from redis.exceptions import ConnectionError as RedisConnectionError

from authcore.cache.redis import JsonCache


class FakeRedis:
    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.store.pop(key, None)


class BrokenRedis:
    def get(self, key):
        raise RedisConnectionError("down")

    def setex(self, key, ttl, value):
        raise RedisConnectionError("down")

    def delete(self, key):
        raise RedisConnectionError("down")


def test_round_trip_with_prefix_and_ttl() -> None:
    client = FakeRedis()
    cache = JsonCache(client)

    assert cache.set("stats", {"total": 3}, 60) is True
    assert client.ttls == {"authcore:stats": 60}
    assert cache.get("stats") == {"total": 3}

    cache.delete("stats")
    assert cache.get("stats") is None


def test_missing_client_is_a_miss() -> None:
    cache = JsonCache(None)
    assert cache.get("stats") is None
    assert cache.set("stats", {}, 60) is False
    cache.delete("stats")


def test_redis_errors_read_as_miss() -> None:
    cache = JsonCache(BrokenRedis())
    assert cache.get("stats") is None
    assert cache.set("stats", {"a": 1}, 60) is False
    cache.delete("stats")


def test_corrupt_payload_reads_as_miss() -> None:
    client = FakeRedis()
    client.store["authcore:stats"] = "{not json"
    assert JsonCache(client).get("stats") is None
