"""
Database-Related Exceptions

Author: Almacen Platform Team
Date: 2025-12-08
"""

from almacen.core.exceptions.base import AlmacenError


class DatabaseError(AlmacenError):
    """Base exception for database pool errors."""
    pass


class DatabaseConnectionError(DatabaseError):
    """
    Raised when the pool cannot be opened or is not open yet.

    Query failures are NOT wrapped in this type: driver errors propagate
    unchanged so callers can inspect the original exception.
    """

    status_code = 503
