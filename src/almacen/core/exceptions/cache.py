"""
Cache-Related Exceptions

Raised by cache store clients. CacheService absorbs all of them and
degrades to safe defaults, so these never reach route handlers through the
cache layer.

Author: Almacen Platform Team
Date: 2025-12-08
"""

from almacen.core.exceptions.base import AlmacenError


class CacheError(AlmacenError):
    """Base exception for cache-related errors."""
    pass


class CacheConnectionError(CacheError):
    """
    Raised when the store is unreachable or flagged unhealthy.

    Common causes:
    - Redis server is down
    - Network connectivity issues
    - Authentication failure
    """

    status_code = 503


class CacheOperationError(CacheError):
    """
    Raised when a single store command fails.

    Common causes:
    - Command timeout
    - Wrong value type for the command (e.g. INCRBY on a JSON string)
    - Memory limit exceeded
    """
    pass
