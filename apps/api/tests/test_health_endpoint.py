import pytest
from httpx import ASGITransport, AsyncClient


@pytest.mark.asyncio
async def test_readyz_pings_database(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/health/readyz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ready"
    assert payload["components"]["database"]["status"] == "ready"


@pytest.mark.asyncio
async def test_liveness_routes(app_with_db) -> None:
    app, _ = app_with_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        scoped = await client.get("/api/health/healthz")
        root = await client.get("/healthz")

    assert scoped.json() == {"status": "ok"}
    assert root.status_code == 200
    assert root.json()["status"] == "ok"
