"""
Base Exception Class

Root of the almacen exception hierarchy. Specialized exceptions live in
their themed modules (cache.py, database.py).

Author: Almacen Platform Team
Date: 2025-12-08
"""

from typing import Any


class AlmacenError(Exception):
    """
    Base exception for all backend core errors.

    Attributes:
        message: Error message
        request_id: Request ID for correlation (if available)
        details: Additional error details (dict)

    Example:
        raise DatabaseConnectionError(
            "Could not open pool",
            details={"host": "db", "timeout": 2.0},
        )
    """

    status_code: int = 500

    def __init__(
        self, message: str, request_id: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.request_id = request_id
        self.details = (details or {}).copy()
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "request_id": self.request_id,
            "details": self.details,
        }

    def with_context(self, **context) -> "AlmacenError":
        """Add additional context to the error details (chainable)."""
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        details_str = f", details={self.details}" if self.details else ""
        request_id_str = f", request_id='{self.request_id}'" if self.request_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{request_id_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        request_id: str | None = None,
        **details
    ) -> "AlmacenError":
        """
        Wrap a third-party exception with additional context.

        Example:
            >>> try:
            ...     await client.ping()
            ... except RedisError as e:
            ...     raise CacheConnectionError.from_exception(e, host="localhost")
        """
        error_details = {
            "original_error": type(exc).__name__,
            "original_message": str(exc),
            **details,
        }
        return cls(message or str(exc), request_id=request_id, details=error_details)


class ConfigurationError(AlmacenError):
    """Raised when settings are invalid or a backend selector is unknown."""
    pass
