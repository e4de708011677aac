"""
Database infrastructure: raw pool adapters and the EnhancedConnectionPool
that layers caching, metrics and retries on top of them.
"""

from almacen.core.config.settings import Settings
from almacen.core.exceptions import ConfigurationError
from almacen.core.interfaces.database import DatabasePool
from almacen.infrastructure.database.connection_pool import (
    ConnectionPoolStats,
    EnhancedConnectionPool,
    QueryCacheOptions,
    QueryPerformanceMetric,
)
from almacen.infrastructure.database.memory_pool import InMemoryDatabasePool
from almacen.infrastructure.database.postgres_pool import PostgresDatabasePool


def create_database_pool(settings: Settings) -> DatabasePool:
    """Build the configured raw DatabasePool (not yet opened)."""
    backend = settings.database.DATABASE_BACKEND
    if backend == "postgres":
        return PostgresDatabasePool(settings)
    if backend == "memory":
        return InMemoryDatabasePool(size=settings.database.DB_POOL_MAX)
    raise ConfigurationError(
        f"Unknown DATABASE_BACKEND '{backend}'", details={"available": ["postgres", "memory"]}
    )


__all__ = [
    "ConnectionPoolStats",
    "EnhancedConnectionPool",
    "InMemoryDatabasePool",
    "PostgresDatabasePool",
    "QueryCacheOptions",
    "QueryPerformanceMetric",
    "create_database_pool",
]
