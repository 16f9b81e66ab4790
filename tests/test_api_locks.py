"""
REST API tests for /v1/locks.
"""

from uuid import uuid4

import pytest

from lockgate.auth import DEV_TENANT_ID


def _body(record_id="order-1", holder_id="alice", session_id="session_a", **extra):
    return {"record_id": record_id, "holder_id": holder_id, "session_id": session_id, **extra}


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert "X-Trace-ID" in response.headers

    traced = await client.get("/v1/health", headers={"X-Trace-ID": "trace-123"})
    assert traced.headers["X-Trace-ID"] == "trace-123"


@pytest.mark.asyncio
async def test_acquire_conflict_is_200_with_holder(client):
    first = await client.post("/v1/locks/acquire", json=_body(display_name="Alice"))
    assert first.status_code == 200
    assert first.json()["granted"] is True
    assert first.json()["lease"]["holder_id"] == "alice"

    second = await client.post(
        "/v1/locks/acquire",
        json=_body(holder_id="bob", session_id="session_b", display_name="Bob"),
    )
    assert second.status_code == 200
    data = second.json()
    assert data["granted"] is False
    assert data["held_by"] == "Alice"
    assert data["held_by_id"] == "alice"
    assert data["expires_at"] is not None


@pytest.mark.asyncio
async def test_release_is_always_200(client):
    await client.post("/v1/locks/acquire", json=_body(display_name="Alice"))

    first = await client.post("/v1/locks/release", json=_body())
    second = await client.post("/v1/locks/release", json=_body())

    assert first.status_code == 200 and first.json() == {"released": True}
    assert second.status_code == 200 and second.json() == {"released": False}


@pytest.mark.asyncio
async def test_get_lock_and_renew(client, clock):
    assert (await client.get("/v1/locks/order-1")).json() is None

    await client.post("/v1/locks/acquire", json=_body(display_name="Alice", record_type="customer_order"))
    lock = (await client.get("/v1/locks/order-1")).json()
    assert lock["holder_display_name"] == "Alice"
    assert lock["record_type"] == "customer_order"

    clock.advance(seconds=30)
    renewed = (await client.post("/v1/locks/renew", json=_body())).json()
    assert renewed["renewed"] is True
    assert renewed["expires_at"] > lock["expires_at"]

    foreign = (await client.post("/v1/locks/renew", json=_body(holder_id="bob"))).json()
    assert foreign == {"renewed": False, "expires_at": None}


@pytest.mark.asyncio
async def test_expired_lock_reads_as_null(client, clock):
    await client.post("/v1/locks/acquire", json=_body(display_name="Alice"))
    clock.advance(minutes=5, seconds=1)

    assert (await client.get("/v1/locks/order-1")).json() is None


@pytest.mark.asyncio
async def test_heartbeat_and_query(client):
    await client.post("/v1/locks/acquire", json=_body(display_name="Alice"))
    await client.post(
        "/v1/locks/acquire",
        json=_body(record_id="order-2", holder_id="bob", session_id="session_b", display_name="Bob"),
    )

    beat = await client.post(
        "/v1/locks/heartbeat",
        json={"holder_id": "alice", "session_id": "session_a", "record_ids": ["order-1", "order-2"]},
    )
    assert beat.json() == {"renewed": ["order-1"], "lost": ["order-2"]}

    query = await client.post("/v1/locks/query", json={"record_ids": ["order-1", "order-2", "order-3"]})
    locks = query.json()["locks"]
    assert locks["order-1"]["holder_id"] == "alice"
    assert locks["order-2"]["holder_id"] == "bob"
    assert locks["order-3"] is None

    listed = (await client.get("/v1/locks", params={"holder_id": "bob"})).json()["locks"]
    assert [lock["record_id"] for lock in listed] == ["order-2"]


@pytest.mark.asyncio
async def test_tenant_header_scopes_locks(client):
    tenant = str(uuid4())
    await client.post("/v1/locks/acquire", json=_body(display_name="Alice"), headers={"X-Tenant-ID": tenant})

    assert (await client.get("/v1/locks/order-1")).json() is None
    scoped = await client.get("/v1/locks/order-1", headers={"X-Tenant-ID": tenant})
    assert scoped.json()["holder_id"] == "alice"


@pytest.mark.asyncio
async def test_invalid_requests(client):
    bad_tenant = await client.get("/v1/locks/order-1", headers={"X-Tenant-ID": "not-a-uuid"})
    assert bad_tenant.status_code == 400

    missing_name = await client.post("/v1/locks/acquire", json=_body())
    assert missing_name.status_code == 422

    too_many = await client.post("/v1/locks/query", json={"record_ids": [f"r{i}" for i in range(201)]})
    assert too_many.status_code == 400


@pytest.mark.asyncio
async def test_storage_failure_is_503(client, services, monkeypatch):
    from lockgate.engine import StorageUnavailable
    from lockgate.engine.core import LockManager

    async def unavailable(self, tenant_id, record_id):
        raise StorageUnavailable("is_locked", "connection refused")

    monkeypatch.setattr(LockManager, "is_locked", unavailable)

    response = await client.get("/v1/locks/order-1")
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_metrics_endpoint(client):
    await client.post("/v1/locks/acquire", json=_body(display_name="Alice"))

    data = (await client.get("/v1/metrics")).json()
    assert data["counters"]["locks.acquired"] >= 1
    assert "db.query.count" in data["counters"]


@pytest.mark.asyncio
async def test_api_key_required_outside_insecure_dev(services, database_url):
    from httpx import ASGITransport, AsyncClient

    from lockgate.config import Settings
    from lockgate.main import create_app

    services.settings = Settings(
        allow_insecure_dev=False,
        api_key="secret-key",
        database_url=database_url,
    )
    app = create_app(settings=services.settings, services=services, run_background_tasks=False)
    headers = {"X-Tenant-ID": str(DEV_TENANT_ID)}

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        assert (await client.get("/v1/health")).status_code == 401
        wrong = await client.get("/v1/health", headers={"Authorization": "Bearer nope"})
        assert wrong.status_code == 401
        ok = await client.get("/v1/health", headers={**headers, "X-API-Key": "secret-key"})
        assert ok.status_code == 200
        no_tenant = await client.get("/v1/locks/order-1", headers={"X-API-Key": "secret-key"})
        assert no_tenant.status_code == 401
