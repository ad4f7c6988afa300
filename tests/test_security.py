"""Tests for the request pipeline's protective stages.

Covers the threat filter, CORS preflight, security headers, client address
resolution and the per-address rate limiter.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from tasklane import app as app_module
from tasklane.api.security import SECURITY_HEADERS, client_ip, detect_threat
from tasklane.service.rate_limit import RateLimiter
from tasklane.service.runtime import get_runtime
from tasklane.storage.redis_cache import MemoryCache, rate_limit_key


@pytest.fixture
def client():
    with TestClient(app_module.app) as test_client:
        yield test_client


class TestThreatDetection:
    @pytest.mark.parametrize(
        "path, query, category",
        [
            ("/tasks", "search=1' OR '1'='1", "sql_injection"),
            ("/tasks", "q=1 UNION SELECT password FROM users", "sql_injection"),
            ("/tasks", "q=1; DROP TABLE tasks", "sql_injection"),
            ("/tasks", "q=<script>alert(1)</script>", "xss"),
            ("/tasks", "next=javascript:alert(1)", "xss"),
            ("/tasks", "q=%3Cscript%3E", "xss"),
            ("/../../etc/passwd", "", "path_traversal"),
            ("/tasks/..%2f..%2fetc/passwd", "", "path_traversal"),
            ("/tasks/%2e%2e%2fsecret", "", "path_traversal"),
        ],
    )
    def test_detects_category(self, path, query, category):
        assert detect_threat(path, query) == category

    @pytest.mark.parametrize(
        "path, query",
        [
            ("/tasks", "status=todo&page=2"),
            ("/tasks", "search=quarterly report"),
            ("/tags/3", ""),
            ("/tasks", "search=don't forget"),
        ],
    )
    def test_benign_requests_pass(self, path, query):
        assert detect_threat(path, query) is None

    def test_blocked_request_gets_forbidden_envelope(self, client):
        response = client.get("/tasks?search=<script>alert(1)</script>")
        assert response.status_code == 403
        assert response.json() == {
            "success": False,
            "error": {"code": "FORBIDDEN", "message": "Forbidden"},
        }
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Access-Control-Allow-Origin"] == "*"

    def test_encoded_traversal_blocked(self, client):
        response = client.get("/tasks/..%2f..%2fetc/passwd")
        assert response.status_code == 403

    def test_blocked_request_does_not_consume_quota(self, client):
        client.get("/tasks?q=<script>")
        client.get("/health")
        # only the health call reached the limiter
        count = asyncio.run(get_runtime().cache.get(rate_limit_key("testclient")))
        assert count == "1"


class TestCorsAndHeaders:
    def test_preflight_short_circuits(self, client):
        response = client.options(
            "/tasks",
            headers={"Origin": "https://app.example", "Access-Control-Request-Method": "POST"},
        )
        assert response.status_code == 204
        assert response.content == b""
        assert response.headers["Access-Control-Allow-Origin"] == "*"
        assert "PATCH" in response.headers["Access-Control-Allow-Methods"]
        assert "Authorization" in response.headers["Access-Control-Allow-Headers"]
        assert response.headers["Access-Control-Max-Age"] == "86400"

    def test_preflight_on_unknown_path(self, client):
        assert client.options("/nowhere").status_code == 204

    def test_preflight_does_not_consume_quota(self, client):
        for _ in range(70):
            assert client.options("/tasks").status_code == 204
        assert client.get("/health").status_code == 200

    def test_security_headers_on_success(self, client):
        response = client.get("/health")
        for name, value in SECURITY_HEADERS.items():
            assert response.headers[name] == value
        assert "server" not in response.headers

    def test_security_headers_on_error(self, client):
        response = client.get("/tasks")
        assert response.status_code == 401
        assert response.headers["Strict-Transport-Security"].startswith("max-age=63072000")
        assert response.headers["Access-Control-Allow-Origin"] == "*"

    def test_request_id_echoed(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated_when_invalid(self, client):
        response = client.get("/health", headers={"X-Request-ID": "bad id with spaces"})
        assert response.headers["X-Request-ID"] != "bad id with spaces"
        assert len(response.headers["X-Request-ID"]) == 36


class TestClientAddress:
    def _request(self, headers=None, host="10.0.0.9"):
        request = MagicMock()
        request.headers = headers or {}
        request.client = MagicMock(host=host) if host else None
        return request

    def test_peer_address_without_trusted_header(self):
        request = self._request({"X-Forwarded-For": "1.2.3.4"})
        assert client_ip(request) == "10.0.0.9"

    def test_trusted_header_used_when_configured(self):
        request = self._request({"CF-Connecting-IP": "203.0.113.5", "X-Forwarded-For": "1.2.3.4"})
        assert client_ip(request, "CF-Connecting-IP") == "203.0.113.5"

    def test_missing_trusted_header_is_unknown(self):
        request = self._request({"X-Forwarded-For": "1.2.3.4"})
        assert client_ip(request, "CF-Connecting-IP") == "unknown"

    def test_no_peer(self):
        assert client_ip(self._request(host=None)) == "unknown"


class TestRateLimiter:
    async def test_sixty_first_request_rejected(self):
        limiter = RateLimiter(MemoryCache(), max_requests=60, window_seconds=60)
        decisions = [await limiter.check("1.1.1.1") for _ in range(61)]
        assert all(decision.allowed for decision in decisions[:60])
        assert not decisions[60].allowed
        assert decisions[60].retry_after == 60

    async def test_addresses_counted_separately(self):
        limiter = RateLimiter(MemoryCache(), max_requests=1, window_seconds=60)
        assert (await limiter.check("1.1.1.1")).allowed
        assert (await limiter.check("2.2.2.2")).allowed
        assert not (await limiter.check("1.1.1.1")).allowed

    async def test_window_expiry_resets_counter(self):
        now = [1000.0]
        cache = MemoryCache(clock=lambda: now[0])
        limiter = RateLimiter(cache, max_requests=2, window_seconds=60)
        await limiter.check("1.1.1.1")
        await limiter.check("1.1.1.1")
        assert not (await limiter.check("1.1.1.1")).allowed
        now[0] += 61
        assert (await limiter.check("1.1.1.1")).allowed

    async def test_each_admitted_request_extends_window(self):
        now = [1000.0]
        cache = MemoryCache(clock=lambda: now[0])
        limiter = RateLimiter(cache, max_requests=5, window_seconds=60)
        await limiter.check("1.1.1.1")
        now[0] += 50
        await limiter.check("1.1.1.1")
        now[0] += 50
        assert await cache.get_rate_count("1.1.1.1") == 2

    async def test_store_failure_fails_open(self):
        store = MagicMock()
        store.get_rate_count = AsyncMock(side_effect=ConnectionError("redis down"))
        limiter = RateLimiter(store, fail_open=True)
        assert (await limiter.check("1.1.1.1")).allowed

    async def test_store_failure_fails_closed_when_configured(self):
        store = MagicMock()
        store.get_rate_count = AsyncMock(return_value=0)
        store.set_rate_count = AsyncMock(side_effect=TimeoutError("slow"))
        limiter = RateLimiter(store, fail_open=False, window_seconds=30)
        decision = await limiter.check("1.1.1.1")
        assert not decision.allowed
        assert decision.retry_after == 30

    def test_pipeline_returns_429_with_retry_after(self, client):
        statuses = [client.get("/health").status_code for _ in range(61)]
        assert statuses[:60] == [200] * 60
        assert statuses[60] == 429
        response = client.get("/health")
        assert response.headers["Retry-After"] == "60"
        assert response.json()["error"] == {
            "code": "RATE_LIMITED",
            "message": "Too many requests. Please slow down.",
        }
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_pipeline_survives_counter_store_outage(self, client):
        runtime = get_runtime()
        runtime.cache.get = AsyncMock(side_effect=ConnectionError("redis down"))
        response = client.get("/health")
        assert response.status_code == 200
