"""
System Constants and Enumerations

Values that are part of the wire contract or the behaviour of the cache and
pool layers and therefore are not environment-tunable.

Author: Almacen Platform Team
Date: 2025-12-05
"""

from enum import Enum


# ============================================================================
# Health
# ============================================================================


class HealthStatus(str, Enum):
    """Component and overall health verdicts, ordered by severity."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"

    @property
    def severity(self) -> int:
        return _HEALTH_SEVERITY[self]


_HEALTH_SEVERITY = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
}


class AlertSeverity(str, Enum):
    """Alert rule severities; each maps onto a log level when fired."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


# ============================================================================
# Cache
# ============================================================================

TTL_CLASS_NAMES = ("default", "short", "medium", "long", "stats")

# Prefix marking a zlib+base64 payload written with compress=True
COMPRESSED_VALUE_MARKER = "\x00z:"

# Response cache
HEADER_X_CACHE = "X-Cache"
HEADER_X_CACHE_KEY = "X-Cache-Key"
CACHE_HIT = "HIT"
CACHE_MISS = "MISS"
CACHED_RESPONSE_HEADERS = ("content-type", "cache-control", "etag")
NO_CACHE_REQUEST_HEADERS = ("cache-control", "authorization", "x-no-cache")
AUTH_KEY_PREFIX_LENGTH = 10
MUTATING_METHODS = ("POST", "PUT", "PATCH", "DELETE")

# ============================================================================
# Database pool
# ============================================================================

QUERY_METRIC_TEXT_LENGTH = 200
QUERY_LOG_TEXT_LENGTH = 100
RETRY_JITTER_SECONDS = 0.1
TRANSACTION_RETRY_DELAY_SECONDS = 0.05
HEALTH_CHECK_QUERY = "SELECT 1"

# ============================================================================
# HTTP
# ============================================================================

HEADER_REQUEST_ID = "X-Request-ID"
HEADER_RESPONSE_TIME = "X-Response-Time"
