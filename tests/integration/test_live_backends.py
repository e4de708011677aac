"""
Integration Tests against live Redis and PostgreSQL

Connection details come from the environment (REDIS_HOST, DATABASE_URL, ...).
Each test skips when its backend is unreachable.

Run with:
    pytest -m integration
"""

import uuid

import pytest

from almacen.core.config.settings import Settings
from almacen.core.exceptions import DatabaseConnectionError
from almacen.infrastructure.cache import CacheService, RedisStoreClient
from almacen.infrastructure.database import (
    EnhancedConnectionPool,
    PostgresDatabasePool,
    QueryCacheOptions,
)


@pytest.fixture
async def redis_cache():
    settings = Settings()
    store = RedisStoreClient(settings)
    if not await store.connect():
        pytest.skip("Redis not reachable")
    cache = CacheService(store, settings)
    yield cache
    await cache.disconnect()


@pytest.fixture
async def postgres_pool(redis_cache):
    settings = Settings()
    raw = PostgresDatabasePool(settings)
    try:
        await raw.open()
    except DatabaseConnectionError:
        pytest.skip("PostgreSQL not reachable")
    pool = EnhancedConnectionPool(raw, redis_cache, settings)
    yield pool
    await pool.close()


@pytest.mark.integration
class TestLiveRedis:
    """Round trips through a real Redis server."""

    @pytest.mark.asyncio
    async def test_set_get_and_pattern_clear(self, redis_cache):
        namespace = f"itest:{uuid.uuid4().hex}"
        await redis_cache.set(f"{namespace}:a", {"id": 1}, ttl="short")
        await redis_cache.set(f"{namespace}:b", {"id": 2}, ttl="short")

        assert await redis_cache.get(f"{namespace}:a", parse_json=True) == {"id": 1}
        assert 0 < await redis_cache.ttl(f"{namespace}:a") <= 300
        assert await redis_cache.clear_pattern(f"{namespace}:*") == 2

    @pytest.mark.asyncio
    async def test_stats_report_memory(self, redis_cache):
        stats = await redis_cache.get_stats()

        assert stats.memory_usage != "unknown"


@pytest.mark.integration
class TestLivePostgres:
    """Queries through a real PostgreSQL pool."""

    @pytest.mark.asyncio
    async def test_cached_query(self, postgres_pool, redis_cache):
        key = f"itest:{uuid.uuid4().hex}"
        options = QueryCacheOptions(key=key, ttl="short")

        first = await postgres_pool.query("SELECT $1::int AS value", [7], cache=options)
        second = await postgres_pool.query("SELECT $1::int AS value", [7], cache=options)

        assert first == second == [{"value": 7}]
        assert [m.cache_hit for m in postgres_pool.get_performance_metrics(2)].count(True) == 1
        await redis_cache.delete(key)

    @pytest.mark.asyncio
    async def test_transaction_rolls_back(self, postgres_pool):
        async def failing(conn):
            await conn.query("CREATE TEMP TABLE itest_tx (id int)")
            raise ValueError("abort")

        with pytest.raises(ValueError):
            await postgres_pool.transaction(failing, max_retries=1)

        assert await postgres_pool.health_check() is True
