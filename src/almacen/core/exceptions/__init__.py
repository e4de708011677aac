"""
Exception Module

Structured exception hierarchy for the backend core.

Module Structure:
-----------------
- **base.py**: AlmacenError base class + ConfigurationError
- **cache.py**: Cache store exceptions (absorbed by CacheService)
- **database.py**: Database pool exceptions (propagated to callers)

Usage:
------
```python
from almacen.core.exceptions import CacheConnectionError, DatabaseError
```
"""

from almacen.core.exceptions.base import AlmacenError, ConfigurationError
from almacen.core.exceptions.cache import CacheConnectionError, CacheError, CacheOperationError
from almacen.core.exceptions.database import DatabaseConnectionError, DatabaseError

__all__ = [
    "AlmacenError",
    "CacheConnectionError",
    "CacheError",
    "CacheOperationError",
    "ConfigurationError",
    "DatabaseConnectionError",
    "DatabaseError",
]
