"""
Pytest Configuration and Shared Test Fixtures

This module provides reusable fixtures for all tests. Everything runs on the
in-memory cache store and database pool; no Redis or PostgreSQL required.
"""

import pytest

from almacen.application.container import ServiceContainer, wire_services
from almacen.infrastructure.cache.cache_service import CacheService
from almacen.infrastructure.cache.memory_store import InMemoryStore
from almacen.infrastructure.database.connection_pool import EnhancedConnectionPool
from almacen.infrastructure.database.memory_pool import InMemoryDatabasePool
from almacen.infrastructure.monitoring.metrics_collector import MetricsCollector
from tests.test_fixtures import FakeClock, RecordingSleep, SettingsFactory

# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def settings():
    """Settings selecting the in-memory backends."""
    return SettingsFactory.memory()


@pytest.fixture
def metrics_collector(settings):
    """Collector with its own registry, isolated per test."""
    return MetricsCollector(settings)


# ============================================================================
# Cache Fixtures
# ============================================================================


@pytest.fixture
def store_clock():
    """Clock driving TTL expiry in the in-memory store."""
    return FakeClock()


@pytest.fixture
async def memory_store(store_clock):
    store = InMemoryStore(clock=store_clock)
    await store.connect()
    return store


@pytest.fixture
def cache_service(memory_store, settings, metrics_collector):
    return CacheService(memory_store, settings, metrics=metrics_collector)


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def memory_pool():
    pool = InMemoryDatabasePool(size=10)
    await pool.open()
    return pool


@pytest.fixture
def query_clock():
    """perf_counter replacement for query timing."""
    return FakeClock(start=0.0)


@pytest.fixture
def recorded_sleep():
    return RecordingSleep()


@pytest.fixture
def enhanced_pool(memory_pool, cache_service, settings, metrics_collector, query_clock, recorded_sleep):
    return EnhancedConnectionPool(
        memory_pool,
        cache_service,
        settings,
        metrics=metrics_collector,
        clock=query_clock,
        sleep=recorded_sleep,
    )


# ============================================================================
# Application Fixtures
# ============================================================================


@pytest.fixture
def services(settings, cache_service, enhanced_pool, metrics_collector) -> ServiceContainer:
    """Fully wired container over the in-memory backends."""
    return wire_services(settings, cache_service, enhanced_pool, metrics_collector)
