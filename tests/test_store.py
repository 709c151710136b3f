"""Tests for the key-value stores."""

import pytest
from fakes import FakeClock
from redis.exceptions import ConnectionError as RedisConnectionError

from feerelay.errors import UpstreamUnavailable
from feerelay.store import MemoryStore, RedisStore, create_store


class RecordingRedis:
    """Stand-in for a redis.asyncio client."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.data = {}
        self.ttls = {}
        self.closed = False

    def _check(self):
        if self.fail:
            raise RedisConnectionError("Connection refused")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value):
        self._check()
        self.data[key] = value

    async def setex(self, key, ttl, value):
        self._check()
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    async def aclose(self):
        self.closed = True


class TestMemoryStore:
    """Tests for the in-process store."""

    @pytest.mark.asyncio
    async def test_set_and_get(self):
        store = MemoryStore()
        await store.set("a", "1")
        assert await store.get("a") == "1"
        assert await store.get("missing") is None

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        clock = FakeClock(0)
        store = MemoryStore(clock=clock)
        await store.set("quote:1", "x", ttl=300)

        clock.advance(299)
        assert await store.get("quote:1") == "x"
        clock.advance(1)
        assert await store.get("quote:1") is None

    @pytest.mark.asyncio
    async def test_no_ttl_never_expires(self):
        clock = FakeClock(0)
        store = MemoryStore(clock=clock)
        await store.set("k", "v")

        clock.advance(10**9)
        assert await store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_delete(self):
        store = MemoryStore()
        await store.set("k", "v")

        assert await store.delete("k") is True
        assert await store.delete("k") is False
        assert await store.get("k") is None


class TestRedisStore:
    """Tests for the Redis store's command mapping and error handling."""

    @pytest.mark.asyncio
    async def test_set_with_ttl_uses_setex(self):
        client = RecordingRedis()
        store = RedisStore("redis://localhost:6379/0", client=client)

        await store.set("quote:1", "x", ttl=3600)

        assert client.ttls["quote:1"] == 3600
        assert await store.get("quote:1") == "x"

    @pytest.mark.asyncio
    async def test_delete(self):
        client = RecordingRedis()
        store = RedisStore("redis://localhost:6379/0", client=client)
        await store.set("k", "v")

        assert await store.delete("k") is True
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("operation", ["get", "set", "delete"])
    async def test_errors_are_upstream_unavailable(self, operation):
        store = RedisStore("redis://localhost:6379/0", client=RecordingRedis(fail=True))
        args = {"get": ("k",), "set": ("k", "v"), "delete": ("k",)}[operation]

        with pytest.raises(UpstreamUnavailable):
            await getattr(store, operation)(*args)

    @pytest.mark.asyncio
    async def test_close(self):
        client = RecordingRedis()
        await RedisStore("redis://localhost", client=client).close()
        assert client.closed is True


class TestCreateStore:
    def test_memory_without_url(self):
        assert isinstance(create_store(""), MemoryStore)
        assert isinstance(create_store(None), MemoryStore)

    @pytest.mark.asyncio
    async def test_redis_with_url(self):
        store = create_store("redis://localhost:6379/0")
        assert isinstance(store, RedisStore)
        await store.close()
