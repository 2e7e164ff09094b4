"""Integration tests for the middleware chain through the HTTP layer."""

from unittest.mock import AsyncMock, MagicMock, patch

from fastapi.testclient import TestClient

from bandcrawl.adapters.rate_limit.base import AbstractWindowStore
from bandcrawl.core.errors import WindowStoreError

ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key-123"}


def test_allowed_api_response_carries_rate_limit_headers(client: TestClient, clock) -> None:
    resp = client.post("/api/metrics", json={"events": []}, headers={"CF-Connecting-IP": "1.2.3.4"})

    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Limit"] == "100"
    assert resp.headers["X-RateLimit-Remaining"] == "99"
    assert resp.headers["X-RateLimit-Reset"] == str(int(clock()) + 60)


def test_rejects_after_limit_with_429(client: TestClient) -> None:
    headers = {"CF-Connecting-IP": "5.6.7.8"}
    for n in range(100):
        resp = client.post("/api/metrics", json={}, headers=headers)
        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Remaining"] == str(99 - n)

    resp = client.post("/api/metrics", json={}, headers=headers)

    assert resp.status_code == 429
    assert resp.json()["error"] == "Too many requests"
    assert int(resp.headers["Retry-After"]) >= 1
    assert resp.json()["retryAfter"] == int(resp.headers["Retry-After"])
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"


def test_rejected_request_never_reaches_handler(app_factory) -> None:
    service = MagicMock()
    app = app_factory(metrics_service=service)
    client = TestClient(app)
    headers = {"CF-Connecting-IP": "5.6.7.8"}

    for _ in range(101):
        client.post("/api/metrics", json={}, headers=headers)

    assert service.ingest.call_count == 100


def test_window_expiry_restores_access(client: TestClient, clock) -> None:
    headers = {"X-Forwarded-For": "10.0.0.1, 172.16.0.1"}
    for _ in range(101):
        client.post("/api/metrics", json={}, headers=headers)

    clock.advance(61)
    resp = client.post("/api/metrics", json={}, headers=headers)

    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Remaining"] == "99"


def test_unknown_api_path_is_still_counted(client: TestClient) -> None:
    resp = client.get("/api/does-not-exist")

    assert resp.status_code == 404
    assert resp.headers["X-RateLimit-Limit"] == "30"
    assert resp.headers["X-RateLimit-Remaining"] == "29"


def test_health_is_not_rate_limited(client: TestClient) -> None:
    resp = client.get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert "X-RateLimit-Limit" not in resp.headers


def test_admin_paths_are_exempt(client: TestClient) -> None:
    for _ in range(50):
        resp = client.get("/api/admin/rate-limits", headers=ADMIN_HEADERS)
        assert resp.status_code == 200
        assert "X-RateLimit-Remaining" not in resp.headers


def test_store_outage_fails_open(app_factory) -> None:
    store = AsyncMock(spec=AbstractWindowStore)
    store.get.side_effect = WindowStoreError(code="down", message="cache error")
    client = TestClient(app_factory(store=store))

    resp = client.post("/api/metrics", json={})

    assert resp.status_code == 200
    assert "X-RateLimit-Limit" not in resp.headers


def test_rate_limiting_can_be_disabled(client: TestClient) -> None:
    with patch("bandcrawl.core.middleware.settings") as mock_settings:
        mock_settings.app.rate_limit_enabled = False
        mock_settings.app.cors_allow_origin = "*"
        mock_settings.app.security_headers_enabled = True
        mock_settings.log.request_id_header = "X-Request-ID"

        resp = client.post("/api/metrics", json={})

    assert resp.status_code == 200
    assert "X-RateLimit-Limit" not in resp.headers


def test_preflight_returns_204_with_cors_headers(client: TestClient) -> None:
    resp = client.options("/api/metrics")

    assert resp.status_code == 204
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert "POST" in resp.headers["Access-Control-Allow-Methods"]
    assert resp.headers["Access-Control-Max-Age"] == "86400"
    assert "X-RateLimit-Limit" not in resp.headers


def test_security_and_cors_headers_on_every_response(client: TestClient) -> None:
    resp = client.get("/health")

    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"


def test_unhandled_route_error_uses_error_envelope(app) -> None:
    @app.get("/api/boom")
    async def boom():
        raise RuntimeError("kaboom")

    client = TestClient(app)
    resp = client.get("/api/boom", headers={"X-Request-ID": "req-boom-1"})

    assert resp.status_code == 500
    assert resp.json() == {
        "error": {
            "code": "internal_server_error",
            "message": "An unexpected error occurred. Please try again later.",
            "request_id": "req-boom-1",
        }
    }
    assert "kaboom" not in resp.text
    assert resp.headers["X-Request-ID"] == "req-boom-1"
    assert resp.headers["Access-Control-Allow-Origin"] == "*"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"


def test_unhandled_route_error_keeps_generated_request_id(app) -> None:
    @app.get("/api/boom")
    async def boom():
        raise RuntimeError("kaboom")

    resp = TestClient(app).get("/api/boom")

    request_id = resp.json()["error"]["request_id"]
    assert request_id
    assert resp.headers["X-Request-ID"] == request_id


def test_request_id_is_propagated(client: TestClient) -> None:
    resp = client.get("/health", headers={"X-Request-ID": "req-abc-123"})

    assert resp.headers["X-Request-ID"] == "req-abc-123"
    assert resp.headers["X-Request-Duration-ms"]


def test_request_id_is_generated_when_missing(client: TestClient) -> None:
    resp = client.get("/health")

    assert resp.headers.get("X-Request-ID")
