"""
Redis Store Client

Architecture:
    RedisStoreClient (CacheStore implementation)
        ├── ConnectionManager (single node or cluster lifecycle, health flag)
        ├── OperationExecutor (prefixed commands with error translation)
        └── HealthMonitor (background ping loop, reconnect detection)

Failure semantics:
    - connect() never raises; a failed connect leaves the store unhealthy and
      the cache layer degrades to pass-through until a probe succeeds.
    - Command failures raise CacheOperationError / CacheConnectionError; a
      connection-level failure also drops the health flag.

Author: Almacen Platform Team
Date: 2025-12-13
"""

import asyncio
import time
from typing import Any

import redis.asyncio as redis
from redis.asyncio.cluster import ClusterNode, RedisCluster
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError, RedisClusterException, RedisError, TimeoutError

from almacen.core.config.settings import Settings
from almacen.core.exceptions import CacheConnectionError, CacheOperationError
from almacen.core.interfaces.cache import StoreInfo
from almacen.core.logging.logger import get_logger

logger = get_logger(__name__)

# RedisClusterException does not derive from RedisError; an unreachable
# cluster raises it on the first command.
UNREACHABLE_ERRORS = (ConnectionError, TimeoutError, RedisClusterException)
PING_ERRORS = (RedisError, RedisClusterException, OSError)


# =============================================================================
# LAYER 1: CONNECTION MANAGEMENT
# =============================================================================


class ConnectionManager:
    """
    Owns the redis-py client (standalone or cluster) and the health flag.

    The flag mirrors the connection lifecycle: connected -> ready on a
    successful ping, error/closed on failures, reconnecting while the
    background monitor waits for the next successful probe.
    """

    def __init__(self, settings: Settings):
        self._settings = settings.redis
        self._client: redis.Redis | RedisCluster | None = None
        self._healthy = False
        self._state = "closed"

    @property
    def is_healthy(self) -> bool:
        return self._healthy

    @property
    def state(self) -> str:
        return self._state

    @property
    def client(self) -> redis.Redis | RedisCluster | None:
        return self._client

    def _build_client(self) -> redis.Redis | RedisCluster:
        cfg = self._settings
        retry = Retry(ExponentialBackoff(), cfg.REDIS_MAX_RETRIES_PER_REQUEST)
        common: dict[str, Any] = {
            "password": cfg.REDIS_PASSWORD,
            "socket_connect_timeout": cfg.REDIS_CONNECT_TIMEOUT,
            "socket_timeout": cfg.REDIS_COMMAND_TIMEOUT,
            "socket_keepalive": cfg.REDIS_KEEPALIVE,
            "decode_responses": True,
        }

        if cfg.REDIS_CLUSTER_ENABLED and cfg.cluster_nodes:
            # STAGE-REDIS.1.1: Cluster topology
            return RedisCluster(
                startup_nodes=[ClusterNode(host, port) for host, port in cfg.cluster_nodes],
                retry=retry,
                **common,
            )

        # STAGE-REDIS.1.2: Single node with pooled connections
        pool = redis.ConnectionPool(
            host=cfg.REDIS_HOST,
            port=cfg.REDIS_PORT,
            db=cfg.REDIS_DB,
            max_connections=cfg.REDIS_MAX_CONNECTIONS,
            retry_on_timeout=True,
            retry=retry,
            health_check_interval=cfg.REDIS_HEALTH_CHECK_INTERVAL,
            **common,
        )
        return redis.Redis(connection_pool=pool)

    async def connect(self) -> bool:
        """
        Create the client and verify it with PING.

        STAGE-REDIS.2: Connection establishment
        """
        if self._client is None:
            self._client = self._build_client()
            self._state = "connecting"

        try:
            await self._client.ping()
        except PING_ERRORS as e:
            self.mark_unhealthy(e)
            logger.error(
                "Redis connection failed, cache running in pass-through mode",
                stage="REDIS.2",
                host=self._settings.REDIS_HOST,
                port=self._settings.REDIS_PORT,
                cluster=self._settings.REDIS_CLUSTER_ENABLED,
                error=str(e),
            )
            return False

        self.mark_healthy()
        logger.info(
            "Redis connected",
            stage="REDIS.2",
            host=self._settings.REDIS_HOST,
            port=self._settings.REDIS_PORT,
            cluster=self._settings.REDIS_CLUSTER_ENABLED,
        )
        return True

    def mark_healthy(self) -> None:
        if not self._healthy and self._state in ("error", "reconnecting"):
            logger.info("Redis reconnected", stage="REDIS.4")
        self._healthy = True
        self._state = "ready"

    def mark_reconnecting(self) -> None:
        logger.info("Redis reconnecting", stage="REDIS.4")
        self._state = "reconnecting"

    def mark_unhealthy(self, error: Exception | None = None) -> None:
        if self._healthy:
            logger.warning("Redis connection lost", stage="REDIS.4", error=str(error))
        self._healthy = False
        self._state = "error"

    async def disconnect(self) -> None:
        """
        Close the client and its pool.

        STAGE-REDIS.3: Connection cleanup
        """
        if self._client is not None:
            await self._client.aclose()
            self._client = None
        self._healthy = False
        self._state = "closed"
        logger.info("Redis disconnected", stage="REDIS.3")


# =============================================================================
# LAYER 2: OPERATION EXECUTION
# =============================================================================


class OperationExecutor:
    """
    Runs commands with the key prefix applied and errors translated.

    Connection-level errors drop the health flag so the cache layer stops
    hammering a dead server until the monitor sees it come back.
    """

    def __init__(self, connection: ConnectionManager, key_prefix: str):
        self._conn = connection
        self._prefix = key_prefix

    def key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def strip(self, key: str) -> str:
        return key[len(self._prefix):] if key.startswith(self._prefix) else key

    def _client(self) -> redis.Redis | RedisCluster:
        client = self._conn.client
        if client is None or not self._conn.is_healthy:
            raise CacheConnectionError("Redis client not ready", details={"state": self._conn.state})
        return client

    async def run(self, command: str, *args, **kwargs) -> Any:
        client = self._client()
        try:
            return await getattr(client, command)(*args, **kwargs)
        except UNREACHABLE_ERRORS as e:
            self._conn.mark_unhealthy(e)
            raise CacheConnectionError.from_exception(e, command=command) from e
        except RedisError as e:
            raise CacheOperationError.from_exception(e, command=command) from e

    async def scan(self, pattern: str) -> list[str]:
        client = self._client()
        try:
            return [self.strip(k) async for k in client.scan_iter(match=self.key(pattern), count=500)]
        except UNREACHABLE_ERRORS as e:
            self._conn.mark_unhealthy(e)
            raise CacheConnectionError.from_exception(e, command="scan") from e
        except RedisError as e:
            raise CacheOperationError.from_exception(e, command="scan") from e


# =============================================================================
# LAYER 3: HEALTH MONITORING
# =============================================================================


class HealthMonitor:
    """Periodic PING loop; the only path back to healthy after a failure."""

    def __init__(self, connection: ConnectionManager, interval: float):
        self._conn = connection
        self._interval = interval
        self._task: asyncio.Task | None = None
        self.last_latency_ms: float | None = None

    async def probe(self) -> bool:
        """
        STAGE-REDIS.HEALTH: Liveness probe
        """
        client = self._conn.client
        if client is None:
            return False
        start = time.perf_counter()
        try:
            await client.ping()
        except PING_ERRORS as e:
            self._conn.mark_unhealthy(e)
            return False
        self.last_latency_ms = round((time.perf_counter() - start) * 1000, 2)
        self._conn.mark_healthy()
        return True

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            if not self._conn.is_healthy:
                self._conn.mark_reconnecting()
            await self.probe()

    def start(self) -> None:
        if self._task is None and self._interval > 0:
            self._task = asyncio.create_task(self._loop(), name="redis-health-monitor")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


# =============================================================================
# LAYER 4: PUBLIC API
# =============================================================================


def _memory_from_info(info: dict[str, Any]) -> str:
    if "used_memory_human" in info:
        return str(info["used_memory_human"])
    # Cluster INFO returns one section per node
    for node_info in info.values():
        if isinstance(node_info, dict) and "used_memory_human" in node_info:
            return str(node_info["used_memory_human"])
    return "unknown"


class RedisStoreClient:
    """
    CacheStore backed by Redis (single node or cluster).

    Usage:
        store = RedisStoreClient(settings)
        await store.connect()          # never raises
        store.start_health_monitor()
        await store.set("materials:1", '{"id": 1}', ttl=300)
    """

    def __init__(self, settings: Settings):
        self._connection = ConnectionManager(settings)
        self._executor = OperationExecutor(self._connection, settings.redis.REDIS_KEY_PREFIX)
        self._monitor = HealthMonitor(self._connection, settings.redis.REDIS_HEALTH_CHECK_INTERVAL)

    @property
    def is_healthy(self) -> bool:
        return self._connection.is_healthy

    @property
    def last_latency_ms(self) -> float | None:
        return self._monitor.last_latency_ms

    async def connect(self) -> bool:
        return await self._connection.connect()

    def start_health_monitor(self) -> None:
        self._monitor.start()

    async def disconnect(self) -> None:
        await self._monitor.stop()
        await self._connection.disconnect()

    async def health_check(self) -> bool:
        return await self._monitor.probe()

    async def get(self, key: str) -> str | None:
        return await self._executor.run("get", self._executor.key(key))

    async def set(self, key: str, value: str, ttl: int | None = None) -> bool:
        if ttl and ttl > 0:
            result = await self._executor.run("setex", self._executor.key(key), ttl, value)
        else:
            result = await self._executor.run("set", self._executor.key(key), value)
        return bool(result)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._executor.run("delete", *(self._executor.key(k) for k in keys)))

    async def exists(self, key: str) -> bool:
        return int(await self._executor.run("exists", self._executor.key(key))) == 1

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._executor.run("expire", self._executor.key(key), ttl))

    async def ttl(self, key: str) -> int:
        return int(await self._executor.run("ttl", self._executor.key(key)))

    async def keys(self, pattern: str) -> list[str]:
        return await self._executor.scan(pattern)

    async def incrby(self, key: str, amount: int = 1) -> int:
        return int(await self._executor.run("incrby", self._executor.key(key), amount))

    async def info(self) -> StoreInfo:
        memory = await self._executor.run("info", "memory")
        total_keys = await self._executor.run("dbsize")
        return StoreInfo(total_keys=int(total_keys or 0), memory_usage=_memory_from_info(memory))

    async def flushdb(self) -> bool:
        return bool(await self._executor.run("flushdb"))
