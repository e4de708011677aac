"""
In-memory database pool

DatabasePool implementation for running the service without PostgreSQL
(DATABASE_BACKEND=memory) and for tests. Statements are matched by their
stripped text against scripted results; anything unscripted returns no rows.
Every executed statement is recorded, so callers can assert on round trips,
BEGIN/COMMIT/ROLLBACK ordering and connection releases.
"""

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from almacen.core.config.constants import HEALTH_CHECK_QUERY
from almacen.core.exceptions import DatabaseConnectionError
from almacen.core.interfaces.database import Row

ResultSource = list[Row] | Callable[[Sequence[Any] | None], list[Row]]


@dataclass
class ExecutedStatement:
    text: str
    params: Sequence[Any] | None
    connection_id: int | None


class InMemoryConnection:
    def __init__(self, pool: "InMemoryDatabasePool", connection_id: int):
        self._pool = pool
        self.connection_id = connection_id
        self.released = False

    async def query(self, text: str, params: Sequence[Any] | None = None) -> list[Row]:
        return self._pool._execute(text, params, self.connection_id)

    async def release(self) -> None:
        if self.released:
            return
        self.released = True
        self._pool._checked_out -= 1
        self._pool.release_count += 1


class InMemoryDatabasePool:
    """
    Scripted DatabasePool.

    Usage:
        pool = InMemoryDatabasePool()
        pool.add_result("SELECT * FROM proveedores", [{"id": 1, "nombre": "ACME"}])
        await pool.open()
    """

    def __init__(self, size: int = 10):
        self._size = size
        self._results: dict[str, ResultSource] = {}
        self._open = False
        self._checked_out = 0
        self._next_connection_id = 1
        self.statements: list[ExecutedStatement] = []
        self.release_count = 0

    def add_result(self, text: str, result: ResultSource) -> None:
        """Script the rows (or a callable producing them / raising) for a statement."""
        self._results[text.strip()] = result

    def executed(self, text: str) -> int:
        """How many times a statement reached the database."""
        text = text.strip()
        return sum(1 for s in self.statements if s.text == text)

    def set_healthy(self, healthy: bool) -> None:
        self._open = healthy

    async def open(self) -> None:
        self._open = True

    async def close(self) -> None:
        self._open = False

    def _execute(self, text: str, params: Sequence[Any] | None, connection_id: int | None) -> list[Row]:
        if not self._open:
            raise DatabaseConnectionError("Database pool is not open")
        text = text.strip()
        self.statements.append(ExecutedStatement(text, params, connection_id))

        source = self._results.get(text)
        if source is None:
            return [{"?column?": 1}] if text == HEALTH_CHECK_QUERY else []
        if callable(source):
            return source(params)
        return [dict(row) for row in source]

    async def query(self, text: str, params: Sequence[Any] | None = None) -> list[Row]:
        return self._execute(text, params, None)

    async def connect(self) -> InMemoryConnection:
        if not self._open:
            raise DatabaseConnectionError("Database pool is not open")
        connection = InMemoryConnection(self, self._next_connection_id)
        self._next_connection_id += 1
        self._checked_out += 1
        return connection

    @property
    def total_count(self) -> int:
        return self._size if self._open else 0

    @property
    def idle_count(self) -> int:
        return max(self.total_count - self._checked_out, 0)

    @property
    def waiting_count(self) -> int:
        return 0
