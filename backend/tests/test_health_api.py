"""Health, readiness and cross-cutting response behaviour."""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
async def test_health(async_client: AsyncClient) -> None:
    response = await async_client.get("/v1/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_ready_reports_database_and_redis(async_client: AsyncClient) -> None:
    response = await async_client.get("/v1/ready", headers={"X-Request-ID": "ready-check-1"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["checks"]["database"]["status"] == "ok"
    # Redis is disabled in tests; readiness degrades instead of failing
    assert body["checks"]["redis"]["status"] == "degraded"
    assert body["request_id"] == "ready-check-1"


@pytest.mark.asyncio
async def test_root(async_client: AsyncClient) -> None:
    response = await async_client.get("/")
    assert response.status_code == 200
    assert "version" in response.json()


@pytest.mark.asyncio
async def test_security_headers_present(async_client: AsyncClient) -> None:
    response = await async_client.get("/v1/health")
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["Referrer-Policy"] == "no-referrer"
    assert response.headers["Cache-Control"] == "no-store"
    assert "Strict-Transport-Security" not in response.headers


@pytest.mark.asyncio
async def test_request_id_is_generated_and_echoed(async_client: AsyncClient) -> None:
    generated = await async_client.get("/v1/health")
    assert generated.headers["X-Request-ID"]

    response = await async_client.get("/v1/auth/me", headers={"X-Request-ID": "trace-abc"})
    assert response.status_code == 401
    assert response.headers["X-Request-ID"] == "trace-abc"
    body = response.json()
    assert body["error_code"] == "UNAUTHORIZED"
    assert body["request_id"] == "trace-abc"


@pytest.mark.asyncio
async def test_unsafe_request_id_is_replaced(async_client: AsyncClient) -> None:
    response = await async_client.get("/v1/health", headers={"X-Request-ID": "not a safe id"})
    echoed = response.headers["X-Request-ID"]
    assert echoed != "not a safe id"
    assert len(echoed) == 32


@pytest.mark.asyncio
async def test_unknown_route_uses_error_envelope(async_client: AsyncClient) -> None:
    response = await async_client.get("/v1/does-not-exist")
    assert response.status_code == 404
    body = response.json()
    assert body["error_code"] == "NOT_FOUND"
    assert set(body) == {"error_code", "message", "details", "request_id"}
