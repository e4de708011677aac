"""
Cache infrastructure: store clients, the best-effort CacheService, and the
factory that selects a store from CACHE_BACKEND.
"""

from almacen.core.config.settings import Settings
from almacen.core.exceptions import ConfigurationError
from almacen.core.interfaces.cache import CacheStore
from almacen.infrastructure.cache.cache_service import CacheService, CacheStats
from almacen.infrastructure.cache.memory_store import InMemoryStore
from almacen.infrastructure.cache.redis_client import RedisStoreClient


def create_cache_store(settings: Settings) -> CacheStore:
    """Build the configured CacheStore (not yet connected)."""
    backend = settings.redis.CACHE_BACKEND
    if backend == "redis":
        return RedisStoreClient(settings)
    if backend == "memory":
        return InMemoryStore()
    raise ConfigurationError(f"Unknown CACHE_BACKEND '{backend}'", details={"available": ["redis", "memory"]})


__all__ = [
    "CacheService",
    "CacheStats",
    "InMemoryStore",
    "RedisStoreClient",
    "create_cache_store",
]
