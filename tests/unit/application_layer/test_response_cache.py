"""
Unit Tests for the Response Cache Middleware

A small FastAPI app with call-counting handlers sits behind the middleware;
requests go through httpx's ASGI transport. Cache writes are fire-and-forget,
so tests drain the middleware's background tasks before asserting on the
second request.
"""

import asyncio
from types import SimpleNamespace

import httpx
import pytest
from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.requests import Request

from almacen.application.api.middleware.response_cache import (
    AdminResponseCacheMiddleware,
    ApiResponseCacheMiddleware,
    CacheInvalidationMiddleware,
    CachedHttpResponse,
    InvalidationRule,
    ResponseCacheMiddleware,
    UserResponseCacheMiddleware,
    add_response_cache_middleware,
    default_key_builder,
    header_safe,
    user_key_builder,
)


class CountingApp:
    """FastAPI app whose handlers count their invocations."""

    def __init__(self):
        self.calls: dict[str, int] = {}
        self.app = FastAPI()

        @self.app.get("/api/materials")
        async def list_materials():
            self._hit("list")
            return [{"id": 1, "nombre": "Harina"}]

        @self.app.get("/api/materials/{material_id}")
        async def get_material(material_id: int):
            self._hit("detail")
            return {"id": material_id}

        @self.app.post("/api/materials")
        async def create_material():
            self._hit("create")
            return JSONResponse({"id": 2}, status_code=201)

        @self.app.get("/api/missing")
        async def missing():
            self._hit("missing")
            return JSONResponse({"error": "not found"}, status_code=404)

        @self.app.get("/api/plain")
        async def plain():
            self._hit("plain")
            return PlainTextResponse("ok")

        @self.app.get("/api/reports")
        async def reports():
            self._hit("reports")
            return {"total": 10}

    def _hit(self, name: str) -> None:
        self.calls[name] = self.calls.get(name, 0) + 1


def _with_state_user(asgi_app, user):
    """Populate request.state.user the way an auth middleware would."""

    async def app(scope, receive, send):
        if scope["type"] == "http":
            scope.setdefault("state", {})["user"] = user
        await asgi_app(scope, receive, send)

    return app


def _client(asgi_app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=asgi_app), base_url="http://test")


@pytest.fixture
def counting():
    return CountingApp()


@pytest.fixture
def cached_app(counting, cache_service, metrics_collector):
    """Response cache wrapped directly around the app so tests can drain it."""
    return ResponseCacheMiddleware(counting.app, cache=cache_service, metrics=metrics_collector)


@pytest.mark.unit
class TestResponseCache:
    """Test suite for MISS/HIT behavior."""

    @pytest.mark.asyncio
    async def test_miss_then_hit(self, counting, cached_app):
        """Test the second request is replayed without invoking the handler."""
        async with _client(cached_app) as client:
            first = await client.get("/api/materials")
            await cached_app.background.drain()
            second = await client.get("/api/materials")

        assert first.status_code == second.status_code == 200
        assert first.headers["x-cache"] == "MISS"
        assert second.headers["x-cache"] == "HIT"
        assert second.json() == first.json() == [{"id": 1, "nombre": "Harina"}]
        assert second.headers["content-type"] == "application/json"
        assert first.headers["x-cache-key"] == second.headers["x-cache-key"]
        assert counting.calls["list"] == 1

    @pytest.mark.asyncio
    async def test_hit_miss_counters(self, cached_app, metrics_collector):
        """Test HIT/MISS outcomes are counted in Prometheus."""
        async with _client(cached_app) as client:
            await client.get("/api/materials")
            await cached_app.background.drain()
            await client.get("/api/materials")

        registry = metrics_collector.registry
        assert registry.get_sample_value("almacen_response_cache_total", {"result": "miss"}) == 1
        assert registry.get_sample_value("almacen_response_cache_total", {"result": "hit"}) == 1

    @pytest.mark.asyncio
    async def test_stored_entry_shape(self, cached_app, cache_service):
        """Test the stored entry carries status, data, headers and timestamp."""
        async with _client(cached_app) as client:
            response = await client.get("/api/materials?activo=true")
            await cached_app.background.drain()

        key = response.headers["x-cache-key"]
        stored = await cache_service.get(key, parse_json=True)
        entry = CachedHttpResponse.from_dict(stored)

        assert entry.status == 200
        assert entry.data == [{"id": 1, "nombre": "Harina"}]
        assert entry.headers["content-type"] == "application/json"
        assert entry.timestamp > 0
        assert await cache_service.ttl(key) == 1800

    @pytest.mark.asyncio
    async def test_query_strings_are_distinct_entries(self, counting, cached_app):
        """Test different query strings never share an entry."""
        async with _client(cached_app) as client:
            await client.get("/api/materials?page=1")
            await cached_app.background.drain()
            response = await client.get("/api/materials?page=2")

        assert response.headers["x-cache"] == "MISS"
        assert counting.calls["list"] == 2

    @pytest.mark.asyncio
    async def test_post_is_never_cached(self, counting, cached_app):
        """Test mutating methods pass straight through."""
        async with _client(cached_app) as client:
            first = await client.post("/api/materials")
            await cached_app.background.drain()
            await client.post("/api/materials")

        assert "x-cache" not in first.headers
        assert counting.calls["create"] == 2

    @pytest.mark.asyncio
    async def test_non_2xx_not_stored(self, counting, cached_app):
        """Test error responses are tagged MISS but never stored."""
        async with _client(cached_app) as client:
            first = await client.get("/api/missing")
            await cached_app.background.drain()
            second = await client.get("/api/missing")

        assert first.status_code == 404
        assert second.headers["x-cache"] == "MISS"
        assert counting.calls["missing"] == 2

    @pytest.mark.asyncio
    async def test_non_json_not_stored(self, counting, cached_app):
        """Test only JSON bodies are cached."""
        async with _client(cached_app) as client:
            await client.get("/api/plain")
            await cached_app.background.drain()
            await client.get("/api/plain")

        assert counting.calls["plain"] == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "headers",
        [{"Cache-Control": "no-cache"}, {"Authorization": "Bearer abc"}, {"X-No-Cache": "1"}],
    )
    async def test_opt_out_headers_bypass(self, counting, cached_app, headers):
        """Test clients can opt out of the cache."""
        async with _client(cached_app) as client:
            await client.get("/api/materials")
            await cached_app.background.drain()
            response = await client.get("/api/materials", headers=headers)

        assert "x-cache" not in response.headers
        assert counting.calls["list"] == 2

    @pytest.mark.asyncio
    async def test_condition_and_skip_list(self, counting, cache_service):
        """Test a custom condition is consulted and the skip list wins over it."""
        seen = []

        def condition(request):
            seen.append(request.method)
            return True

        app = ResponseCacheMiddleware(
            counting.app, cache=cache_service, condition=condition, skip_methods=["POST"]
        )
        async with _client(app) as client:
            await client.post("/api/materials")
            await client.get("/api/materials")

        assert seen == ["GET"]

    @pytest.mark.asyncio
    async def test_unhealthy_cache_passes_through(self, counting, cached_app, memory_store):
        """Test a down cache degrades to serving every request from the handler."""
        memory_store.set_healthy(False)

        async with _client(cached_app) as client:
            await client.get("/api/materials")
            await cached_app.background.drain()
            response = await client.get("/api/materials")

        assert response.status_code == 200
        assert response.headers["x-cache"] == "MISS"
        assert counting.calls["list"] == 2


@pytest.mark.unit
class TestVariants:
    """Test suite for api/user/admin variants."""

    @pytest.mark.asyncio
    async def test_api_variant_matches_route_templates(self, counting, cache_service):
        """Test only endpoints matching the glob list are cached."""
        app = ApiResponseCacheMiddleware(
            counting.app, endpoint_patterns=["/api/materials*"], cache=cache_service
        )
        async with _client(app) as client:
            materials = await client.get("/api/materials/5")
            reports = await client.get("/api/reports")

        assert materials.headers["x-cache"] == "MISS"
        assert "x-cache" not in reports.headers

    @pytest.mark.asyncio
    async def test_user_variant_separates_users(self, counting, cache_service):
        """Test entries are scoped per user and use the short TTL."""
        app = UserResponseCacheMiddleware(counting.app, cache=cache_service)
        async with _client(app) as client:
            alice = await client.get("/api/materials", headers={"X-User-ID": "alice"})
            await app.background.drain()
            bob = await client.get("/api/materials", headers={"X-User-ID": "bob"})
            await app.background.drain()
            alice_again = await client.get("/api/materials", headers={"X-User-ID": "alice"})

        assert alice.headers["x-cache-key"].startswith("user:alice:GET:/api/materials")
        assert bob.headers["x-cache"] == "MISS"
        assert alice_again.headers["x-cache"] == "HIT"
        assert counting.calls["list"] == 2
        assert await cache_service.ttl(alice.headers["x-cache-key"]) == 300

    @pytest.mark.asyncio
    async def test_admin_variant_requires_role(self, counting, cache_service):
        """Test only admin requests are cached."""
        app = AdminResponseCacheMiddleware(counting.app, cache=cache_service)
        async with _client(app) as client:
            anonymous = await client.get("/api/materials")
            admin = await client.get("/api/materials", headers={"X-User-Role": "admin"})

        assert "x-cache" not in anonymous.headers
        assert admin.headers["x-cache"] == "MISS"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "user, cached",
        [
            ({"id": 1, "role": "admin"}, True),
            (SimpleNamespace(id=1, role="admin"), True),
            ({"id": 2, "role": "viewer"}, False),
        ],
    )
    async def test_admin_variant_reads_role_from_state(self, counting, cache_service, user, cached):
        """Test the role set on request.state.user also enables caching."""
        app = AdminResponseCacheMiddleware(counting.app, cache=cache_service)

        async with _client(_with_state_user(app, user)) as client:
            response = await client.get("/api/materials")

        assert response.status_code == 200
        assert ("x-cache" in response.headers) is cached

    @pytest.mark.asyncio
    async def test_user_variant_reads_id_from_state(self, counting, cache_service):
        app = UserResponseCacheMiddleware(counting.app, cache=cache_service)

        async with _client(_with_state_user(app, SimpleNamespace(id=42))) as client:
            response = await client.get("/api/materials")

        assert response.headers["x-cache-key"].startswith("user:42:GET:/api/materials")


@pytest.mark.unit
class TestInvalidation:
    """Test suite for CacheInvalidationMiddleware."""

    @pytest.mark.asyncio
    async def test_successful_mutation_clears_patterns(self, counting, cache_service):
        """Test a 2xx POST clears the configured patterns."""
        await cache_service.set("GET:/api/materials:{}:{}", {"status": 200, "data": []})
        await cache_service.set("stats:daily", 1)
        await cache_service.set("suppliers:1", 1)
        app = CacheInvalidationMiddleware(
            counting.app,
            rules=[InvalidationRule("/api/materials*", ("*/api/materials*", "stats:*"))],
            cache=cache_service,
        )

        async with _client(app) as client:
            response = await client.post("/api/materials")
            await app.background.drain()

        assert response.status_code == 201
        assert await cache_service.exists("GET:/api/materials:{}:{}") is False
        assert await cache_service.exists("stats:daily") is False
        assert await cache_service.exists("suppliers:1") is True

    @pytest.mark.asyncio
    async def test_reads_and_failures_do_not_invalidate(self, counting, cache_service):
        """Test GETs and non-2xx responses leave the cache alone."""
        await cache_service.set("stats:daily", 1)
        app = CacheInvalidationMiddleware(
            counting.app,
            rules=[
                InvalidationRule("/api/materials*", ("stats:*",)),
                InvalidationRule("/api/missing", ("stats:*",), methods=("GET",)),
            ],
            cache=cache_service,
        )

        async with _client(app) as client:
            await client.get("/api/materials")
            await client.get("/api/missing")
            await app.background.drain()

        assert await cache_service.exists("stats:daily") is True


@pytest.mark.unit
class TestKeyBuilding:
    """Test suite for cache key construction."""

    def _request(self, app: FastAPI, path: str, query: str = "", headers=None) -> Request:
        raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
        return Request({
            "type": "http",
            "method": "GET",
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": query.encode(),
            "headers": raw_headers,
            "scheme": "http",
            "server": ("test", 80),
            "app": app,
        })

    def test_default_key(self, counting):
        """Test method, url, query JSON and path params JSON."""
        request = self._request(counting.app, "/api/materials/7", "expand=true")

        assert default_key_builder(request) == (
            'GET:/api/materials/7?expand=true:{"expand":"true"}:{"material_id":"7"}'
        )

    def test_auth_and_language_segments(self, counting):
        """Test authorization prefix and accept-language vary the key."""
        request = self._request(
            counting.app,
            "/api/materials",
            headers={"Authorization": "Bearer abcdefghijkl", "Accept-Language": "es-MX"},
        )

        assert default_key_builder(request).endswith("|auth:Bearer abc|lang:es-MX")

    def test_user_key_falls_back_to_anonymous(self, counting):
        request = self._request(counting.app, "/api/materials")

        assert user_key_builder(request).startswith("user:anonymous:GET:/api/materials")

    def test_header_safe(self):
        """Test non-ASCII characters are percent-encoded for header transport."""
        assert header_safe("GET:/api/materiales/año") == "GET:/api/materiales/a%C3%B1o"


@pytest.mark.unit
class TestRegistration:
    """Test suite for add_response_cache_middleware."""

    @pytest.mark.asyncio
    async def test_registered_middleware_uses_app_services(self, counting, services):
        """Test the middleware finds the cache on app.state.services."""
        counting.app.state.services = services
        add_response_cache_middleware(counting.app, services.settings)

        async with _client(counting.app) as client:
            first = await client.get("/api/materials")
            await asyncio.sleep(0.01)
            second = await client.get("/api/materials")

        assert first.headers["x-cache"] == "MISS"
        assert second.headers["x-cache"] == "HIT"
