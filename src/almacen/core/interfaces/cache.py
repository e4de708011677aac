"""
Cache Store Protocol

Capability interface for key-value stores consumed by CacheService.

Architectural Decision: Protocol-based abstraction
- RedisStoreClient (single node or cluster) in production
- InMemoryStore for local development without Redis and for tests
- Implementation picked once at startup by the container factory

Store methods RAISE CacheError subclasses on failure; the fail-soft policy
lives one level up in CacheService.

Author: Almacen Platform Team
Date: 2025-12-08
"""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class StoreInfo:
    """Store-reported statistics used by CacheService.get_stats()."""

    total_keys: int
    memory_usage: str


@runtime_checkable
class CacheStore(Protocol):
    """
    Protocol defining the key-value store capability.

    Keys passed in and returned are logical keys; any configured key prefix
    is an implementation detail of the store.
    """

    @property
    def is_healthy(self) -> bool:
        """Current health flag. Callers skip the store while False."""
        ...

    async def connect(self) -> bool:
        """
        Establish the connection.

        Returns:
            bool: True when the store answered a ping. Never raises.
        """
        ...

    def start_health_monitor(self) -> None:
        """Begin periodic background probing (no-op for stores that need none)."""
        ...

    async def disconnect(self) -> None:
        ...

    async def health_check(self) -> bool:
        """Liveness probe; updates is_healthy as a side effect. Never raises."""
        ...

    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        """Store value; ttl > 0 sets an expiry, otherwise the key persists."""
        ...

    async def delete(self, *keys: str) -> int:
        ...

    async def exists(self, key: str) -> bool:
        ...

    async def expire(self, key: str, ttl: int) -> bool:
        ...

    async def ttl(self, key: str) -> int:
        """Seconds remaining; -1 without expiry, -2 for a missing key."""
        ...

    async def keys(self, pattern: str) -> list[str]:
        """All logical keys matching a glob pattern."""
        ...

    async def incrby(self, key: str, amount: int = 1) -> int:
        ...

    async def info(self) -> StoreInfo:
        ...

    async def flushdb(self) -> bool:
        ...
