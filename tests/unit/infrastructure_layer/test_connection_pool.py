"""
Unit Tests for EnhancedConnectionPool

Covers query caching, metric recording, slow-query detection, retry with
backoff, transactional retry and the health probe. Timing is driven by a
fake clock and a recording sleep so nothing actually waits.
"""

import pytest

from almacen.core.exceptions import DatabaseConnectionError
from almacen.infrastructure.database.connection_pool import (
    EnhancedConnectionPool,
    QueryCacheOptions,
)
from tests.test_fixtures import DatabaseTestFactory, SettingsFactory

MATERIALS_SQL = "SELECT * FROM materia_prima WHERE activo = $1"
MATERIALS_ROWS = [{"id": 1, "nombre": "Harina"}, {"id": 2, "nombre": "Azucar"}]


@pytest.mark.unit
class TestQuery:
    """Test suite for plain and cached queries."""

    @pytest.mark.asyncio
    async def test_query_returns_rows(self, enhanced_pool, memory_pool):
        """Test rows are returned and one metric is recorded."""
        memory_pool.add_result(MATERIALS_SQL, MATERIALS_ROWS)

        rows = await enhanced_pool.query(MATERIALS_SQL, [True])

        assert rows == MATERIALS_ROWS
        metrics = enhanced_pool.get_performance_metrics()
        assert len(metrics) == 1
        assert metrics[0].row_count == 2
        assert metrics[0].cache_hit is False

    @pytest.mark.asyncio
    async def test_cache_hit_skips_database(self, enhanced_pool, memory_pool):
        """Test a second cached query never reaches the database."""
        memory_pool.add_result(MATERIALS_SQL, MATERIALS_ROWS)
        options = QueryCacheOptions(key="materials:active", ttl="medium")

        first = await enhanced_pool.query(MATERIALS_SQL, [True], cache=options)
        second = await enhanced_pool.query(MATERIALS_SQL, [True], cache=options)

        assert first == second == MATERIALS_ROWS
        assert memory_pool.executed(MATERIALS_SQL) == 1
        hits = [m.cache_hit for m in enhanced_pool.get_performance_metrics()]
        assert sorted(hits) == [False, True]

    @pytest.mark.asyncio
    async def test_cached_rows_use_ttl_class(self, enhanced_pool, memory_pool, cache_service):
        """Test the result is stored under the key with the requested TTL."""
        memory_pool.add_result(MATERIALS_SQL, MATERIALS_ROWS)

        await enhanced_pool.query(MATERIALS_SQL, [True], cache=QueryCacheOptions("materials:active", "short"))

        assert await cache_service.ttl("materials:active") == 300

    @pytest.mark.asyncio
    async def test_cache_outage_falls_through(self, enhanced_pool, memory_pool, memory_store):
        """Test an unavailable cache does not block the query."""
        memory_pool.add_result(MATERIALS_SQL, MATERIALS_ROWS)
        memory_store.set_healthy(False)

        rows = await enhanced_pool.query(MATERIALS_SQL, [True], cache=QueryCacheOptions("materials:active"))

        assert rows == MATERIALS_ROWS

    @pytest.mark.asyncio
    async def test_query_error_propagates(self, enhanced_pool, memory_pool):
        """Test execution errors reach the caller and are not recorded as metrics."""
        memory_pool.add_result("SELECT broken", DatabaseTestFactory.flaky(99, []))

        with pytest.raises(ConnectionError):
            await enhanced_pool.query("SELECT broken")

        assert enhanced_pool.get_performance_metrics() == []

    @pytest.mark.asyncio
    async def test_slow_query_detected(self, enhanced_pool, memory_pool, query_clock, metrics_collector):
        """Test queries above the threshold are counted as slow."""

        def slow(params):
            query_clock.advance(1.5)
            return [{"total": 1}]

        memory_pool.add_result("SELECT slow_report()", slow)

        await enhanced_pool.query("SELECT slow_report()")

        slow_queries = enhanced_pool.get_slow_queries(threshold_ms=1000)
        assert len(slow_queries) == 1
        assert slow_queries[0].execution_time == pytest.approx(1500.0)
        assert metrics_collector.registry.get_sample_value("almacen_db_slow_queries_total") == 1

    @pytest.mark.asyncio
    async def test_query_text_is_truncated(self, enhanced_pool):
        """Test recorded query text is capped at 200 characters."""
        long_sql = "SELECT " + "x, " * 200 + "1"

        await enhanced_pool.query(long_sql)

        assert len(enhanced_pool.get_performance_metrics()[0].query) == 200


@pytest.mark.unit
class TestQueryWithRetry:
    """Test suite for retry with exponential backoff."""

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, enhanced_pool, memory_pool, recorded_sleep):
        """Test two failures then success, with growing backoff."""
        flaky = DatabaseTestFactory.flaky(2, MATERIALS_ROWS)
        memory_pool.add_result(MATERIALS_SQL, flaky)

        rows = await enhanced_pool.query_with_retry(MATERIALS_SQL, [True], max_retries=3, backoff_ms=100)

        assert rows == MATERIALS_ROWS
        assert flaky.calls == 3
        assert len(recorded_sleep.delays) == 2
        first, second = recorded_sleep.delays
        assert 0.1 <= first <= 0.2 + 1e-9
        assert 0.2 <= second <= 0.3 + 1e-9

    @pytest.mark.asyncio
    async def test_exhaustion_reraises_last_error(self, enhanced_pool, memory_pool, recorded_sleep):
        """Test the original exception surfaces after max_retries attempts."""
        flaky = DatabaseTestFactory.flaky(10, [], error=ConnectionError("server closed the connection"))
        memory_pool.add_result(MATERIALS_SQL, flaky)

        with pytest.raises(ConnectionError, match="server closed"):
            await enhanced_pool.query_with_retry(MATERIALS_SQL, [True], max_retries=3)

        assert flaky.calls == 3
        assert len(recorded_sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_single_attempt(self, enhanced_pool, memory_pool, recorded_sleep):
        """Test max_retries=1 means no sleep at all."""
        memory_pool.add_result(MATERIALS_SQL, DatabaseTestFactory.flaky(1, []))

        with pytest.raises(ConnectionError):
            await enhanced_pool.query_with_retry(MATERIALS_SQL, max_retries=1)

        assert recorded_sleep.delays == []


@pytest.mark.unit
class TestTransaction:
    """Test suite for transactional execution."""

    @pytest.mark.asyncio
    async def test_commit(self, enhanced_pool, memory_pool):
        """Test BEGIN, callback statements and COMMIT on one connection."""
        memory_pool.add_result("INSERT INTO movimientos (material_id) VALUES ($1) RETURNING id", [{"id": 7}])

        async def callback(conn):
            await conn.query("UPDATE materia_prima SET stock = stock - $1 WHERE id = $2", [5, 1])
            return await conn.query("INSERT INTO movimientos (material_id) VALUES ($1) RETURNING id", [1])

        result = await enhanced_pool.transaction(callback)

        assert result == [{"id": 7}]
        texts = [s.text for s in memory_pool.statements]
        assert texts[0] == "BEGIN"
        assert texts[-1] == "COMMIT"
        assert len({s.connection_id for s in memory_pool.statements}) == 1
        assert memory_pool.release_count == 1

    @pytest.mark.asyncio
    async def test_rollback_then_retry(self, enhanced_pool, memory_pool, recorded_sleep):
        """Test a failed attempt rolls back, waits 50ms and retries on a fresh connection."""
        attempts = []

        async def callback(conn):
            attempts.append(conn.connection_id)
            if len(attempts) == 1:
                raise ValueError("deadlock detected")
            return "ok"

        assert await enhanced_pool.transaction(callback, max_retries=2) == "ok"

        texts = [s.text for s in memory_pool.statements]
        assert texts == ["BEGIN", "ROLLBACK", "BEGIN", "COMMIT"]
        assert recorded_sleep.delays == [0.05]
        assert attempts[0] != attempts[1]
        assert memory_pool.release_count == 2

    @pytest.mark.asyncio
    async def test_final_failure_propagates(self, enhanced_pool, memory_pool, recorded_sleep):
        """Test the last failure is raised after rolling back every attempt."""

        async def callback(conn):
            raise ValueError("constraint violated")

        with pytest.raises(ValueError, match="constraint violated"):
            await enhanced_pool.transaction(callback, max_retries=2)

        assert [s.text for s in memory_pool.statements].count("ROLLBACK") == 2
        assert memory_pool.release_count == 2
        assert recorded_sleep.delays == [0.05]


@pytest.mark.unit
class TestReadViews:
    """Test suite for stats and metric views."""

    @pytest.mark.asyncio
    async def test_stats(self, enhanced_pool, memory_pool, query_clock):
        """Test pool counts and average execution time."""

        def timed(ms):
            def source(params):
                query_clock.advance(ms / 1000)
                return []

            return source

        memory_pool.add_result("SELECT a", timed(10))
        memory_pool.add_result("SELECT b", timed(30))
        await enhanced_pool.query("SELECT a")
        await enhanced_pool.query("SELECT b")
        connection = await memory_pool.connect()

        stats = enhanced_pool.get_stats()

        assert stats.total_count == 10
        assert stats.idle_count == 9
        assert stats.active_count == 1
        assert stats.average_acquisition_time == pytest.approx(20.0)
        assert stats.last_acquisition_time == pytest.approx(30.0)
        assert stats.to_dict()["totalConnections"] == 10
        await connection.release()

    @pytest.mark.asyncio
    async def test_metrics_ring_buffer(self, memory_pool, cache_service, query_clock):
        """Test the metric buffer keeps only the most recent entries."""
        settings = SettingsFactory.memory(database={"DB_METRICS_HISTORY": 3})
        pool = EnhancedConnectionPool(memory_pool, cache_service, settings, clock=query_clock)

        for i in range(5):
            await pool.query(f"SELECT {i}")

        queries = {m.query for m in pool.get_performance_metrics()}
        assert queries == {"SELECT 2", "SELECT 3", "SELECT 4"}

    @pytest.mark.asyncio
    async def test_slow_queries_sorted_and_limited(self, enhanced_pool, memory_pool, query_clock):
        """Test slow queries come back slowest first."""
        for name, seconds in (("a", 1.2), ("b", 3.0), ("c", 2.0)):
            memory_pool.add_result(
                f"SELECT {name}",
                lambda params, s=seconds: (query_clock.advance(s), [])[1],
            )
            await enhanced_pool.query(f"SELECT {name}")

        slow = enhanced_pool.get_slow_queries(threshold_ms=1000, limit=2)

        assert [m.query for m in slow] == ["SELECT b", "SELECT c"]

    @pytest.mark.asyncio
    async def test_clear_metrics(self, enhanced_pool):
        await enhanced_pool.query("SELECT 1")

        enhanced_pool.clear_metrics()

        assert enhanced_pool.get_performance_metrics() == []
        assert enhanced_pool.get_stats().average_acquisition_time == 0.0


@pytest.mark.unit
class TestHealth:
    """Test suite for the health probe."""

    @pytest.mark.asyncio
    async def test_health_check_open_pool(self, enhanced_pool):
        assert await enhanced_pool.health_check() is True

    @pytest.mark.asyncio
    async def test_health_check_closed_pool(self, enhanced_pool, memory_pool):
        """Test a closed pool reports unhealthy without raising."""
        await memory_pool.close()

        assert await enhanced_pool.health_check() is False

    @pytest.mark.asyncio
    async def test_closed_pool_raises_on_query(self, enhanced_pool, memory_pool):
        await memory_pool.close()

        with pytest.raises(DatabaseConnectionError):
            await enhanced_pool.query("SELECT 1")
