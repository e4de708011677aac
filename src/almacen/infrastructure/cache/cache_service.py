"""
Cache Service - best-effort caching on top of a CacheStore

Architecture:
    CacheService (Public API, never raises)
        ├── ValueCodec (orjson serialization, optional zlib compression)
        ├── CacheObserver (hit/miss counters, logging, Prometheus)
        └── CacheStore (RedisStoreClient | InMemoryStore)

Failure policy:
    Caching is an optimization, not a correctness dependency. Every public
    method catches store failures, logs a warning and returns a safe default
    (None, False, 0, -1). An unhealthy store is skipped without a round trip.

Concurrency:
    memoize() is cache-aside without single-flight. Two concurrent callers
    that both miss will both run the producer; callers needing mutual
    exclusion must add their own lock.

Author: Almacen Platform Team
Date: 2025-12-13
"""

import asyncio
import base64
import inspect
import zlib
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import orjson
from pydantic import BaseModel

from almacen.core.config.constants import COMPRESSED_VALUE_MARKER
from almacen.core.config.settings import Settings
from almacen.core.interfaces.cache import CacheStore
from almacen.core.logging.logger import get_logger, log_stage

if TYPE_CHECKING:
    from almacen.infrastructure.monitoring.metrics_collector import MetricsCollector

logger = get_logger(__name__)

TTL = int | str | None


@dataclass
class CacheStats:
    """Derived cache statistics."""

    hits: int
    misses: int
    hit_rate: float
    total_keys: int
    memory_usage: str

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "hits": data["hits"],
            "misses": data["misses"],
            "hitRate": data["hit_rate"],
            "totalKeys": data["total_keys"],
            "memoryUsage": data["memory_usage"],
        }


# =============================================================================
# LAYER 1: VALUE ENCODING
# =============================================================================


def _json_default(value: Any) -> Any:
    # NUMERIC columns arrive as Decimal; keep full precision as text
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return list(value)
    raise TypeError(f"Type is not JSON serializable: {type(value).__name__}")


class ValueCodec:
    """
    Converts Python values to stored strings and back.

    Strings are stored verbatim, numbers are string-coerced, everything else
    is JSON-encoded. Compression only kicks in above a size threshold.
    """

    def __init__(self, compression_threshold: int):
        self._threshold = compression_threshold

    def encode(self, value: Any, compress: bool = False) -> str:
        if isinstance(value, str):
            payload = value
        elif isinstance(value, (int, float)) and not isinstance(value, bool):
            payload = str(value)
        elif isinstance(value, BaseModel):
            payload = orjson.dumps(value.model_dump(mode="json")).decode("utf-8")
        else:
            payload = orjson.dumps(value, default=_json_default).decode("utf-8")

        if compress and len(payload) > self._threshold:
            packed = base64.b64encode(zlib.compress(payload.encode("utf-8"))).decode("ascii")
            return f"{COMPRESSED_VALUE_MARKER}{packed}"
        return payload

    @staticmethod
    def decode(raw: str, parse_json: bool = False) -> Any:
        if raw.startswith(COMPRESSED_VALUE_MARKER):
            try:
                packed = raw[len(COMPRESSED_VALUE_MARKER):]
                raw = zlib.decompress(base64.b64decode(packed)).decode("utf-8")
            except (ValueError, zlib.error):
                return raw

        if not parse_json:
            return raw
        try:
            return orjson.loads(raw)
        except orjson.JSONDecodeError:
            return raw


# =============================================================================
# LAYER 2: OBSERVABILITY
# =============================================================================


class CacheObserver:
    """
    Hit/miss accounting for the process lifetime.

    Exactly one of hits/misses moves per get() call; errors count as misses.
    """

    def __init__(self, metrics: "MetricsCollector | None" = None):
        self._metrics = metrics
        self.hits = 0
        self.misses = 0

    def hit(self, key: str) -> None:
        self.hits += 1
        log_stage(logger, "CACHE.1", "Cache hit", level="debug", cache_key=key)
        if self._metrics:
            self._metrics.record_cache_lookup(hit=True)

    def miss(self, key: str) -> None:
        self.misses += 1
        log_stage(logger, "CACHE.1", "Cache miss", level="debug", cache_key=key)
        if self._metrics:
            self._metrics.record_cache_lookup(hit=False)

    def reset(self) -> None:
        self.hits = 0
        self.misses = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 2) if total else 0.0


# =============================================================================
# LAYER 3: PUBLIC API
# =============================================================================


class CacheService:
    """
    Best-effort cache API used by the connection pool, the response cache
    middleware and route handlers.

    Usage:
        cache = CacheService(store, settings)
        await cache.set("materials:list", rows, ttl="medium")
        rows = await cache.get("materials:list", parse_json=True)
        report = await cache.memoize("stats:daily", build_report, ttl="stats")
        await cache.invalidate_patterns(["materials:*", "stats:*"])
    """

    def __init__(
        self,
        store: CacheStore,
        settings: Settings,
        metrics: "MetricsCollector | None" = None,
    ):
        self._store = store
        self._ttl_classes = settings.cache.ttl_classes
        self._codec = ValueCodec(settings.cache.CACHE_COMPRESSION_THRESHOLD)
        self._observer = CacheObserver(metrics)

    @property
    def store(self) -> CacheStore:
        return self._store

    @property
    def is_healthy(self) -> bool:
        return self._store.is_healthy

    def resolve_ttl(self, ttl: TTL) -> int:
        """Named TTL class or raw seconds; unknown names fall back to default."""
        if ttl is None:
            return self._ttl_classes["default"]
        if isinstance(ttl, str):
            return self._ttl_classes.get(ttl, self._ttl_classes["default"])
        return int(ttl)

    def _warn(self, operation: str, key: str, error: Exception) -> None:
        log_stage(
            logger, "CACHE.ERR", f"Cache {operation} failed", level="warning",
            cache_key=key, error=str(error), error_type=type(error).__name__,
        )

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    async def set(self, key: str, value: Any, ttl: TTL = None, compress: bool = False) -> bool:
        """
        Serialize and store a value.

        STAGE-CACHE.2: Cache population

        Returns:
            bool: True if the store accepted the write
        """
        if not self._store.is_healthy:
            return False
        try:
            payload = self._codec.encode(value, compress)
            seconds = self.resolve_ttl(ttl)
            await self._store.set(key, payload, seconds if seconds > 0 else None)
            log_stage(logger, "CACHE.2", "Cache set", level="debug", cache_key=key, ttl=seconds)
            return True
        except Exception as e:
            self._warn("set", key, e)
            return False

    async def get(self, key: str, parse_json: bool = False) -> Any | None:
        """
        Fetch a value.

        STAGE-CACHE.1: Cache lookup

        Args:
            key: Cache key
            parse_json: Decode the stored JSON; undecodable values come back raw

        Returns:
            The value, or None on miss or any store failure
        """
        if not self._store.is_healthy:
            self._observer.miss(key)
            return None
        try:
            raw = await self._store.get(key)
        except Exception as e:
            self._observer.miss(key)
            self._warn("get", key, e)
            return None

        if raw is None:
            self._observer.miss(key)
            return None

        self._observer.hit(key)
        return self._codec.decode(raw, parse_json)

    async def delete(self, key: str) -> bool:
        """STAGE-CACHE.3: Single key invalidation"""
        if not self._store.is_healthy:
            return False
        try:
            await self._store.delete(key)
            return True
        except Exception as e:
            self._warn("delete", key, e)
            return False

    async def exists(self, key: str) -> bool:
        if not self._store.is_healthy:
            return False
        try:
            return await self._store.exists(key)
        except Exception as e:
            self._warn("exists", key, e)
            return False

    async def expire(self, key: str, ttl: int) -> bool:
        if not self._store.is_healthy:
            return False
        try:
            return await self._store.expire(key, ttl)
        except Exception as e:
            self._warn("expire", key, e)
            return False

    async def ttl(self, key: str) -> int:
        """Seconds remaining, -1 on error or unhealthy store."""
        if not self._store.is_healthy:
            return -1
        try:
            return await self._store.ttl(key)
        except Exception as e:
            self._warn("ttl", key, e)
            return -1

    async def clear_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern.

        STAGE-CACHE.3: Pattern invalidation

        Returns:
            int: Number of keys removed (0 when none matched or on failure)
        """
        if not self._store.is_healthy:
            return 0
        try:
            keys = await self._store.keys(pattern)
            if not keys:
                return 0
            removed = await self._store.delete(*keys)
            log_stage(logger, "CACHE.3", "Cache pattern cleared", pattern=pattern, keys=removed)
            return removed
        except Exception as e:
            self._warn("clear_pattern", pattern, e)
            return 0

    async def incr(self, key: str, amount: int = 1) -> int:
        """Atomic increment; 0 on failure."""
        if not self._store.is_healthy:
            return 0
        try:
            return await self._store.incrby(key, amount)
        except Exception as e:
            self._warn("incr", key, e)
            return 0

    # -------------------------------------------------------------------------
    # Advanced patterns
    # -------------------------------------------------------------------------

    async def memoize(
        self,
        key: str,
        producer: Callable[[], Any] | Callable[[], Awaitable[Any]],
        ttl: TTL = None,
        parse_json: bool = True,
        compress: bool = False,
    ) -> Any:
        """
        Return the cached value, or run producer once and cache its result.

        STAGE-CACHE.4: Cache-aside

        No single-flight: concurrent misses on the same key each run the
        producer. Producer exceptions propagate to the caller.
        """
        cached = await self.get(key, parse_json=parse_json)
        if cached is not None:
            return cached

        result = producer()
        if inspect.isawaitable(result):
            result = await result

        await self.set(key, result, ttl=ttl, compress=compress)
        return result

    async def invalidate_patterns(self, patterns: Iterable[str]) -> int:
        """
        Clear several patterns concurrently.

        Returns:
            int: Total number of keys removed
        """
        results = await asyncio.gather(*(self.clear_pattern(p) for p in patterns))
        return sum(results)

    # -------------------------------------------------------------------------
    # Monitoring and admin
    # -------------------------------------------------------------------------

    async def health_check(self) -> bool:
        try:
            return await self._store.health_check()
        except Exception as e:
            self._warn("health_check", "-", e)
            return False

    async def get_stats(self) -> CacheStats:
        """
        Hit/miss counters plus store-reported key count and memory.

        On failure the counters are still reported with total_keys=0,
        memory_usage="unknown" and hit_rate=0.
        """
        try:
            if not self._store.is_healthy:
                raise ConnectionError("cache store unhealthy")
            info = await self._store.info()
        except Exception as e:
            self._warn("stats", "-", e)
            return CacheStats(
                hits=self._observer.hits,
                misses=self._observer.misses,
                hit_rate=0.0,
                total_keys=0,
                memory_usage="unknown",
            )

        return CacheStats(
            hits=self._observer.hits,
            misses=self._observer.misses,
            hit_rate=self._observer.hit_rate,
            total_keys=info.total_keys,
            memory_usage=info.memory_usage,
        )

    async def flush_all(self) -> bool:
        """
        Clear the whole store and reset hit/miss counters. Admin/test only.
        """
        log_stage(logger, "CACHE.5", "Flushing entire cache", level="warning")
        try:
            await self._store.flushdb()
        except Exception as e:
            self._warn("flush_all", "*", e)
            return False
        self._observer.reset()
        return True

    async def disconnect(self) -> None:
        try:
            await self._store.disconnect()
        except Exception as e:
            self._warn("disconnect", "-", e)
