"""
Response Cache Middleware
=========================

HTTP response memoization for read-heavy CRUD routes, plus a companion
invalidator for mutating routes.

HOW IT WORKS
------------
This is a pure ASGI middleware. Response capture wraps the ``send`` callable
handed to the downstream app, so the handler never knows it is being cached:

    request --> PASSTHROUGH? ---------------------------> app
                   |
                   v
                LOOKUP --HIT--> replay stored status/body/headers
                   |            (X-Cache: HIT, handler not invoked)
                  MISS
                   |
                   v
                INTERCEPT: app(scope, receive, send_wrapper)
                   - http.response.start: add X-Cache: MISS + X-Cache-Key
                   - http.response.body: collect chunks
                   - final chunk, 2xx, JSON: schedule cache write

Cache writes and invalidations are fire-and-forget tasks: the client never
waits for Redis, and a failed write is only logged.

CACHE KEY
---------
    METHOD:url:JSON(query):JSON(path params)[|auth:<10 chars>][|lang:<accept-language>]

``url`` is the request path plus query string; path params are resolved
from the route that matches the request.

STAGE-RC: Response cache
------------------------
RC.1: Lookup
RC.2: Replay (HIT)
RC.3: Capture and store (MISS)
RC.4: Invalidation

Author: Almacen Platform Team
Date: 2025-12-14
"""

import asyncio
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import orjson
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import Response
from starlette.routing import Match
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from almacen.core.config.constants import (
    AUTH_KEY_PREFIX_LENGTH,
    CACHE_HIT,
    CACHE_MISS,
    CACHED_RESPONSE_HEADERS,
    HEADER_X_CACHE,
    HEADER_X_CACHE_KEY,
    MUTATING_METHODS,
    NO_CACHE_REQUEST_HEADERS,
)
from almacen.core.logging.logger import get_logger
from almacen.infrastructure.cache.cache_service import TTL, CacheService

if TYPE_CHECKING:
    from almacen.core.config.settings import Settings
    from almacen.infrastructure.monitoring.metrics_collector import MetricsCollector

logger = get_logger(__name__)

KeyBuilder = Callable[[Request], str]
Condition = Callable[[Request], bool]


# ============================================================================
# Cached representation
# ============================================================================


@dataclass
class CachedHttpResponse:
    status: int
    data: Any
    headers: dict[str, str]
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "data": self.data,
            "headers": self.headers,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CachedHttpResponse":
        return cls(
            status=int(raw["status"]),
            data=raw.get("data"),
            headers=dict(raw.get("headers") or {}),
            timestamp=int(raw.get("timestamp", 0)),
        )


# ============================================================================
# Route resolution and key building
# ============================================================================


def match_route(scope: Scope) -> tuple[str | None, dict[str, Any]]:
    """
    Find the route that will serve this request.

    Returns:
        (route path template or None, path params)
    """
    router = getattr(scope.get("app"), "router", None)
    for route in getattr(router, "routes", ()):
        match, child_scope = route.matches(scope)
        if match == Match.FULL:
            return getattr(route, "path", None), dict(child_scope.get("path_params", {}))
    return None, {}


def _compact_json(value: dict[str, Any]) -> str:
    return orjson.dumps(value, default=str).decode("utf-8")


def default_key_builder(request: Request) -> str:
    path = request.url.path
    query = request.url.query
    url = f"{path}?{query}" if query else path
    _, params = match_route(request.scope)

    key = (
        f"{request.method}:{url}:"
        f"{_compact_json(dict(request.query_params))}:{_compact_json(params)}"
    )

    authorization = request.headers.get("authorization")
    if authorization:
        key += f"|auth:{authorization[:AUTH_KEY_PREFIX_LENGTH]}"
    language = request.headers.get("accept-language")
    if language:
        key += f"|lang:{language}"
    return key


def default_condition(request: Request) -> bool:
    """GET only, and never when the client opts out or sends credentials."""
    if request.method != "GET":
        return False
    return not any(header in request.headers for header in NO_CACHE_REQUEST_HEADERS)


def header_safe(value: str) -> str:
    """Percent-encode anything that cannot travel in a latin-1 header value."""
    return "".join(ch if " " <= ch <= "~" else quote(ch, safe="") for ch in value)


def _is_json(content_type: str | None) -> bool:
    return bool(content_type) and "json" in content_type.lower()


def _services(scope: Scope) -> Any:
    app = scope.get("app")
    state = getattr(app, "state", None)
    return getattr(state, "services", None)


class _BackgroundTasks:
    """Keeps strong references to fire-and-forget tasks until they finish."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


# ============================================================================
# Response cache
# ============================================================================


class ResponseCacheMiddleware:
    """
    Memoize successful JSON responses in the CacheService.

    Options:
        cache: CacheService (defaults to app.state.services.cache)
        key_builder: Request -> key (default_key_builder)
        ttl: TTL class name or seconds (default "medium")
        condition: Request -> bool predicate (default_condition)
        skip_methods: methods never cached (POST, PUT, PATCH, DELETE)
        compress: compress large payloads
        metrics: MetricsCollector for HIT/MISS counters

    Usage:
        app.add_middleware(ResponseCacheMiddleware, ttl="short")
    """

    def __init__(
        self,
        app: ASGIApp,
        cache: CacheService | None = None,
        key_builder: KeyBuilder | None = None,
        ttl: TTL = "medium",
        condition: Condition | None = None,
        skip_methods: Iterable[str] | None = None,
        compress: bool = False,
        metrics: "MetricsCollector | None" = None,
    ):
        self.app = app
        self._cache = cache
        self.key_builder = key_builder or default_key_builder
        self.ttl = ttl
        self.condition = condition or default_condition
        self.skip_methods = frozenset(m.upper() for m in (skip_methods or MUTATING_METHODS))
        self.compress = compress
        self._metrics = metrics
        self.background = _BackgroundTasks()

    def _resolve_cache(self, scope: Scope) -> CacheService | None:
        if self._cache is not None:
            return self._cache
        services = _services(scope)
        return getattr(services, "cache", None)

    def _record(self, scope: Scope, result: str) -> None:
        metrics = self._metrics or getattr(_services(scope), "metrics", None)
        if metrics is not None:
            metrics.record_response_cache(result)

    def should_cache(self, request: Request) -> bool:
        if request.method.upper() in self.skip_methods:
            return False
        return self.condition(request)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        cache = self._resolve_cache(scope)
        request = Request(scope)
        if cache is None or not self.should_cache(request):
            await self.app(scope, receive, send)
            return

        key = self.key_builder(request)

        # STAGE-RC.1: Lookup
        cached = await cache.get(key, parse_json=True)
        if isinstance(cached, dict) and "status" in cached:
            await self._replay(CachedHttpResponse.from_dict(cached), key, scope, receive, send)
            return

        await self._intercept(cache, key, scope, receive, send)

    async def _replay(
        self, cached: CachedHttpResponse, key: str, scope: Scope, receive: Receive, send: Send
    ) -> None:
        """STAGE-RC.2: Replay a stored response without invoking the handler."""
        headers = {
            name: value for name, value in cached.headers.items()
            if name.lower() in CACHED_RESPONSE_HEADERS
        }
        headers[HEADER_X_CACHE] = CACHE_HIT
        headers[HEADER_X_CACHE_KEY] = header_safe(key)
        media_type = headers.pop("content-type", "application/json")

        response = Response(
            content=orjson.dumps(cached.data),
            status_code=cached.status,
            headers=headers,
            media_type=media_type,
        )
        self._record(scope, CACHE_HIT)
        logger.debug("Response cache hit", stage="RC.2", cache_key=key)
        await response(scope, receive, send)

    async def _intercept(
        self, cache: CacheService, key: str, scope: Scope, receive: Receive, send: Send
    ) -> None:
        """STAGE-RC.3: Run the handler, tag the response and capture it."""
        status = 0
        captured_headers: dict[str, str] = {}
        body = bytearray()

        async def send_wrapper(message: Message) -> None:
            nonlocal status, captured_headers
            if message["type"] == "http.response.start":
                status = message["status"]
                headers = MutableHeaders(scope=message)
                headers.append(HEADER_X_CACHE, CACHE_MISS)
                headers.append(HEADER_X_CACHE_KEY, header_safe(key))
                captured_headers = {
                    name.lower(): value for name, value in headers.items()
                    if name.lower() in CACHED_RESPONSE_HEADERS
                }
            elif message["type"] == "http.response.body":
                body.extend(message.get("body", b""))
                if not message.get("more_body", False):
                    self._store(cache, key, status, captured_headers, bytes(body))
            await send(message)

        self._record(scope, CACHE_MISS)
        await self.app(scope, receive, send_wrapper)

    def _store(
        self, cache: CacheService, key: str, status: int, headers: dict[str, str], body: bytes
    ) -> None:
        if not cache.is_healthy:
            return
        if not 200 <= status < 300 or not _is_json(headers.get("content-type")):
            return
        try:
            data = orjson.loads(body) if body else None
        except orjson.JSONDecodeError as e:
            logger.warning("Response body is not valid JSON, not cached", stage="RC.3",
                           cache_key=key, error=str(e))
            return

        entry = CachedHttpResponse(
            status=status, data=data, headers=headers, timestamp=int(time.time() * 1000)
        )
        self.background.spawn(self._write(cache, key, entry))

    async def _write(self, cache: CacheService, key: str, entry: CachedHttpResponse) -> None:
        stored = await cache.set(key, entry.to_dict(), ttl=self.ttl, compress=self.compress)
        if stored:
            logger.debug("Response cached", stage="RC.3", cache_key=key, status=entry.status)
        else:
            logger.warning("Response cache write failed", stage="RC.3", cache_key=key)


# ============================================================================
# Variants
# ============================================================================


class ApiResponseCacheMiddleware(ResponseCacheMiddleware):
    """
    Cache only endpoints whose route template (or raw path) matches one of
    the glob patterns, e.g. ["/api/materials*", "/api/proveedores/*"].
    """

    def __init__(self, app: ASGIApp, endpoint_patterns: Sequence[str], **options):
        base_condition = options.pop("condition", None) or default_condition
        self.endpoint_patterns = tuple(endpoint_patterns)
        super().__init__(app, condition=self._matches_endpoint(base_condition), **options)

    def _matches_endpoint(self, base: Condition) -> Condition:
        def condition(request: Request) -> bool:
            if not base(request):
                return False
            route_path, _ = match_route(request.scope)
            candidates = [p for p in (route_path, request.url.path) if p]
            return any(
                fnmatchcase(candidate, pattern)
                for pattern in self.endpoint_patterns
                for candidate in candidates
            )

        return condition


def _state_user_attr(request: Request, name: str) -> Any:
    """Read an attribute of request.state.user, which may be a dict or an object."""
    user = getattr(request.state, "user", None)
    return user.get(name) if isinstance(user, dict) else getattr(user, name, None)


def user_id_for(request: Request) -> str:
    header = request.headers.get("x-user-id")
    if header:
        return header
    user_id = _state_user_attr(request, "id")
    return str(user_id) if user_id is not None else "anonymous"


def user_key_builder(request: Request) -> str:
    return f"user:{user_id_for(request)}:{default_key_builder(request)}"


class UserResponseCacheMiddleware(ResponseCacheMiddleware):
    """Per-user cache entries with the short TTL class."""

    def __init__(self, app: ASGIApp, **options):
        options.setdefault("key_builder", user_key_builder)
        options.setdefault("ttl", "short")
        super().__init__(app, **options)


def admin_condition(request: Request) -> bool:
    if not default_condition(request):
        return False
    role = request.headers.get("x-user-role") or _state_user_attr(request, "role")
    return role == "admin"


class AdminResponseCacheMiddleware(ResponseCacheMiddleware):
    """Cache only admin requests, with the short TTL class."""

    def __init__(self, app: ASGIApp, **options):
        options.setdefault("condition", admin_condition)
        options.setdefault("ttl", "short")
        super().__init__(app, **options)


# ============================================================================
# Invalidation
# ============================================================================


@dataclass(frozen=True)
class InvalidationRule:
    """After a successful mutating request on path_pattern, clear patterns."""

    path_pattern: str
    patterns: tuple[str, ...]
    methods: tuple[str, ...] = MUTATING_METHODS


class CacheInvalidationMiddleware:
    """
    Clear cache patterns after successful (2xx) mutating requests.

    Usage:
        app.add_middleware(
            CacheInvalidationMiddleware,
            rules=[InvalidationRule("/api/materials*", ("*/api/materials*", "stats:*"))],
        )
    """

    def __init__(
        self,
        app: ASGIApp,
        rules: Sequence[InvalidationRule],
        cache: CacheService | None = None,
    ):
        self.app = app
        self.rules = tuple(rules)
        self._cache = cache
        self.background = _BackgroundTasks()

    def _patterns_for(self, method: str, path: str) -> list[str]:
        patterns: list[str] = []
        for rule in self.rules:
            if method in rule.methods and fnmatchcase(path, rule.path_pattern):
                patterns.extend(p for p in rule.patterns if p not in patterns)
        return patterns

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        patterns = self._patterns_for(scope["method"].upper(), scope["path"])
        cache = self._cache or getattr(_services(scope), "cache", None)
        if not patterns or cache is None:
            await self.app(scope, receive, send)
            return

        status = 0

        async def send_wrapper(message: Message) -> None:
            nonlocal status
            if message["type"] == "http.response.start":
                status = message["status"]
            await send(message)

        await self.app(scope, receive, send_wrapper)

        if 200 <= status < 300:
            self.background.spawn(self._invalidate(cache, patterns, scope["path"]))

    async def _invalidate(self, cache: CacheService, patterns: list[str], path: str) -> None:
        """STAGE-RC.4: Pattern invalidation after a mutation."""
        removed = await cache.invalidate_patterns(patterns)
        logger.info(
            "Cache invalidated after mutation",
            stage="RC.4",
            path=path,
            patterns=patterns,
            keys_removed=removed,
        )


def add_response_cache_middleware(
    app, settings: "Settings", variant: type[ResponseCacheMiddleware] = ResponseCacheMiddleware,
    **options,
) -> None:
    """
    Register a response cache middleware using the configured skip list.

    Args:
        app: FastAPI application instance
        settings: Application settings
        variant: ResponseCacheMiddleware or one of its subclasses
        **options: Forwarded to the middleware constructor
    """
    options.setdefault("skip_methods", settings.cache.RESPONSE_CACHE_SKIP_METHODS)
    app.add_middleware(variant, **options)
    logger.info("Response cache middleware registered", variant=variant.__name__)
