"""
In-Memory Store

CacheStore implementation for local development without Redis
(CACHE_BACKEND=memory) and for tests. Expiry is evaluated lazily against an
injectable clock; glob patterns follow Redis semantics via fnmatch.

Not shared across processes. Not a production cache.
"""

import fnmatch
import sys
import time
from collections.abc import Callable

from almacen.core.exceptions import CacheConnectionError, CacheOperationError
from almacen.core.interfaces.cache import StoreInfo


def _human_bytes(size: int) -> str:
    for unit in ("B", "K", "M", "G"):
        if size < 1024:
            return f"{size:.2f}{unit}" if unit != "B" else f"{size}B"
        size /= 1024
    return f"{size:.2f}T"


class InMemoryStore:
    """
    Dictionary-backed CacheStore.

    Args:
        clock: Monotonic seconds source; tests pass a fake to drive expiry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, str] = {}
        self._expires_at: dict[str, float] = {}
        self._healthy = False

    @property
    def is_healthy(self) -> bool:
        return self._healthy

    async def connect(self) -> bool:
        self._healthy = True
        return True

    def start_health_monitor(self) -> None:
        return None

    async def disconnect(self) -> None:
        self._healthy = False
        self._data.clear()
        self._expires_at.clear()

    async def health_check(self) -> bool:
        return self._healthy

    def set_healthy(self, healthy: bool) -> None:
        """Simulate losing or regaining the store."""
        self._healthy = healthy

    def _check(self) -> None:
        if not self._healthy:
            raise CacheConnectionError("In-memory store is disconnected")

    def _alive(self, key: str) -> bool:
        expires_at = self._expires_at.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            self._expires_at.pop(key, None)
            return False
        return key in self._data

    async def get(self, key: str) -> str | None:
        self._check()
        return self._data[key] if self._alive(key) else None

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        self._check()
        self._data[key] = value
        if ttl and ttl > 0:
            self._expires_at[key] = self._clock() + ttl
        else:
            self._expires_at.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._data.pop(key, None)
            self._expires_at.pop(key, None)
        return removed

    async def exists(self, key: str) -> bool:
        self._check()
        return self._alive(key)

    async def expire(self, key: str, ttl: int) -> bool:
        self._check()
        if not self._alive(key):
            return False
        self._expires_at[key] = self._clock() + ttl
        return True

    async def ttl(self, key: str) -> int:
        self._check()
        if not self._alive(key):
            return -2
        expires_at = self._expires_at.get(key)
        if expires_at is None:
            return -1
        return max(0, round(expires_at - self._clock()))

    async def keys(self, pattern: str) -> list[str]:
        self._check()
        return [k for k in list(self._data) if self._alive(k) and fnmatch.fnmatchcase(k, pattern)]

    async def incrby(self, key: str, amount: int = 1) -> int:
        self._check()
        current = self._data[key] if self._alive(key) else "0"
        try:
            value = int(current) + amount
        except ValueError as e:
            raise CacheOperationError(
                "value is not an integer or out of range", details={"key": key}
            ) from e
        self._data[key] = str(value)
        return value

    async def info(self) -> StoreInfo:
        self._check()
        live = [k for k in list(self._data) if self._alive(k)]
        size = sum(sys.getsizeof(k) + sys.getsizeof(self._data[k]) for k in live)
        return StoreInfo(total_keys=len(live), memory_usage=_human_bytes(size))

    async def flushdb(self) -> bool:
        self._check()
        self._data.clear()
        self._expires_at.clear()
        return True
