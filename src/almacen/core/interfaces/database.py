"""
Database Pool Protocol

Capability interface for the raw relational pool underneath
EnhancedConnectionPool.

Implementations:
- PostgresDatabasePool: asyncpg-backed pool
- InMemoryDatabasePool: scripted results for local development and tests

Query failures propagate as the driver's own exceptions.

Author: Almacen Platform Team
Date: 2025-12-08
"""

from collections.abc import Sequence
from typing import Any, Protocol, runtime_checkable

Row = dict[str, Any]


@runtime_checkable
class PooledConnection(Protocol):
    """A connection checked out of the pool for exclusive use."""

    async def query(self, text: str, params: Sequence[Any] | None = None) -> list[Row]:
        ...

    async def release(self) -> None:
        """Return the connection to the pool. Safe to call once per checkout."""
        ...


@runtime_checkable
class DatabasePool(Protocol):
    """Raw pooled-connection capability."""

    async def open(self) -> None:
        """
        Create the underlying pool.

        Raises:
            DatabaseConnectionError: If the pool cannot be created
        """
        ...

    async def close(self) -> None:
        ...

    async def query(self, text: str, params: Sequence[Any] | None = None) -> list[Row]:
        """Run one statement on any free connection."""
        ...

    async def connect(self) -> PooledConnection:
        """Check out a dedicated connection (caller must release it)."""
        ...

    @property
    def total_count(self) -> int:
        ...

    @property
    def idle_count(self) -> int:
        ...

    @property
    def waiting_count(self) -> int:
        ...
