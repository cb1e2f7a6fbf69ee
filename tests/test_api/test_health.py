import pytest


@pytest.mark.asyncio
async def test_health_check(client):
    """GET /health should return healthy when Postgres and Redis are up."""
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["postgres"] == "ok"
    assert data["redis"] == "ok"


@pytest.mark.asyncio
async def test_health_degraded_without_redis(client, redis_server):
    """Jobs are still accepted without Redis (deferred), so this is not a 503."""
    redis_server.connected = False

    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"
    assert response.json()["redis"] == "unavailable"
