"""
HTTP middleware: error handling, request correlation, request metrics and
the response cache family.
"""

from almacen.application.api.middleware.error_handler import (
    ErrorHandlingMiddleware,
    add_error_handling_middleware,
)
from almacen.application.api.middleware.request_id import RequestIdMiddleware
from almacen.application.api.middleware.request_metrics import RequestMetricsMiddleware
from almacen.application.api.middleware.response_cache import (
    AdminResponseCacheMiddleware,
    ApiResponseCacheMiddleware,
    CacheInvalidationMiddleware,
    CachedHttpResponse,
    InvalidationRule,
    ResponseCacheMiddleware,
    UserResponseCacheMiddleware,
    add_response_cache_middleware,
    default_condition,
    default_key_builder,
)

__all__ = [
    "AdminResponseCacheMiddleware",
    "ApiResponseCacheMiddleware",
    "CacheInvalidationMiddleware",
    "CachedHttpResponse",
    "ErrorHandlingMiddleware",
    "InvalidationRule",
    "RequestIdMiddleware",
    "RequestMetricsMiddleware",
    "ResponseCacheMiddleware",
    "UserResponseCacheMiddleware",
    "add_error_handling_middleware",
    "add_response_cache_middleware",
    "default_condition",
    "default_key_builder",
]
