"""
Unit Tests for InMemoryStore

Verifies the Redis-like semantics the cache service relies on: lazy TTL
expiry, glob key matching, integer increments and connection state.
"""

import pytest

from almacen.core.exceptions import CacheConnectionError, CacheOperationError
from almacen.infrastructure.cache.memory_store import InMemoryStore


@pytest.mark.unit
class TestInMemoryStore:
    """Test suite for InMemoryStore."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, memory_store):
        """Test a stored value is returned verbatim."""
        await memory_store.set("materials:1", '{"id": 1}')

        assert await memory_store.get("materials:1") == '{"id": 1}'

    @pytest.mark.asyncio
    async def test_ttl_expiry_follows_clock(self, memory_store, store_clock):
        """Test keys vanish once the clock passes their TTL."""
        await memory_store.set("k", "v", ttl=10)

        store_clock.advance(9)
        assert await memory_store.get("k") == "v"
        assert await memory_store.ttl("k") == 1

        store_clock.advance(1)
        assert await memory_store.get("k") is None
        assert await memory_store.exists("k") is False

    @pytest.mark.asyncio
    async def test_ttl_codes(self, memory_store):
        """Test -1 for keys without expiry and -2 for missing keys."""
        await memory_store.set("persistent", "v")

        assert await memory_store.ttl("persistent") == -1
        assert await memory_store.ttl("missing") == -2

    @pytest.mark.asyncio
    async def test_set_without_ttl_clears_previous_expiry(self, memory_store, store_clock):
        """Test overwriting a key without TTL makes it persistent."""
        await memory_store.set("k", "v1", ttl=5)
        await memory_store.set("k", "v2")

        store_clock.advance(60)

        assert await memory_store.get("k") == "v2"

    @pytest.mark.asyncio
    async def test_keys_glob(self, memory_store):
        """Test glob patterns match like Redis KEYS."""
        for key in ("materials:1", "materials:2", "suppliers:1"):
            await memory_store.set(key, "x")

        assert sorted(await memory_store.keys("materials:*")) == ["materials:1", "materials:2"]
        assert await memory_store.keys("*:1") == ["materials:1", "suppliers:1"]
        assert await memory_store.keys("nothing:*") == []

    @pytest.mark.asyncio
    async def test_delete_counts_existing_keys(self, memory_store):
        """Test delete reports only keys that existed."""
        await memory_store.set("a", "1")
        await memory_store.set("b", "2")

        assert await memory_store.delete("a", "b", "c") == 2

    @pytest.mark.asyncio
    async def test_expire_missing_key(self, memory_store):
        """Test expire on a missing key returns False."""
        assert await memory_store.expire("missing", 10) is False

    @pytest.mark.asyncio
    async def test_incrby(self, memory_store):
        """Test increments start from zero and accumulate."""
        assert await memory_store.incrby("counter") == 1
        assert await memory_store.incrby("counter", 5) == 6
        assert await memory_store.get("counter") == "6"

    @pytest.mark.asyncio
    async def test_incrby_non_integer_raises(self, memory_store):
        """Test incrementing a non-numeric value raises CacheOperationError."""
        await memory_store.set("name", "acme")

        with pytest.raises(CacheOperationError):
            await memory_store.incrby("name")

    @pytest.mark.asyncio
    async def test_info_counts_live_keys(self, memory_store, store_clock):
        """Test info ignores expired keys."""
        await memory_store.set("a", "1")
        await memory_store.set("b", "2", ttl=1)
        store_clock.advance(2)

        info = await memory_store.info()

        assert info.total_keys == 1
        assert info.memory_usage.endswith(("B", "K"))

    @pytest.mark.asyncio
    async def test_unhealthy_store_raises(self, memory_store):
        """Test every operation raises while disconnected."""
        memory_store.set_healthy(False)

        with pytest.raises(CacheConnectionError):
            await memory_store.get("k")
        with pytest.raises(CacheConnectionError):
            await memory_store.set("k", "v")
        assert await memory_store.health_check() is False

    @pytest.mark.asyncio
    async def test_connect_and_disconnect(self):
        """Test connect flips health and disconnect drops data."""
        store = InMemoryStore()
        assert store.is_healthy is False

        assert await store.connect() is True
        await store.set("k", "v")
        await store.disconnect()

        assert store.is_healthy is False
        await store.connect()
        assert await store.get("k") is None
