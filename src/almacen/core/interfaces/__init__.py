"""
Core Interfaces Module

Capability protocols (PEP 544) that let the container swap real and
in-memory implementations without conditional imports.

Components:
-----------
- **cache.py**: CacheStore protocol for key-value stores
- **database.py**: DatabasePool / PooledConnection protocols for SQL pools
"""

from almacen.core.interfaces.cache import CacheStore, StoreInfo
from almacen.core.interfaces.database import DatabasePool, PooledConnection, Row

__all__ = [
    "CacheStore",
    "DatabasePool",
    "PooledConnection",
    "Row",
    "StoreInfo",
]
