import httpx

from conftest import UPSTREAM_URL, make_record
from listing_sync.api.deps import get_client_factory, get_rate_limiter, get_receiver
from listing_sync.core.db import get_session_factory
from listing_sync.main import app
from listing_sync.services.upstream_config import save_config
from listing_sync.upstream.schemas import LOOKUP_TYPES

ADMIN = {"x-internal-admin-key": "test-internal"}
CRON = {"x-cron-secret": "test-cron-secret"}


async def _save_config(client) -> None:
    r = await client.post(
        "/v1/upstream/test-connection",
        json={"authToken": "stored-token", "baseUrl": UPSTREAM_URL},
        headers=ADMIN,
    )
    assert r.status_code == 200
    assert r.json()["success"] is True


async def test_trigger_sync_with_token(client, upstream):
    upstream.active = [make_record(1), make_record(2)]

    r = await client.post("/v1/sync", json={"authToken": "tok", "syncType": "full"})

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    assert body["syncSessionId"].startswith("syn_")
    assert body["stats"] == {"total": 2, "new": 2, "updated": 0, "deleted": 0, "failed": 0}
    assert "errors" not in body
    assert upstream.requests[0].headers["authorization"] == "tok"

    r = await client.get("/v1/sync")
    latest = r.json()["latestSync"]
    assert latest["id"] == body["syncSessionId"]
    assert latest["status"] == "completed"
    assert latest["new_properties"] == 2


async def test_latest_sync_is_null_before_any_run(client):
    r = await client.get("/v1/sync")
    assert r.json() == {"success": True, "latestSync": None}


async def test_connection_failure_returns_400_envelope(client, upstream):
    upstream.connection_ok = False

    r = await client.post("/v1/sync", json={"authToken": "tok"})

    assert r.status_code == 400
    body = r.json()
    assert body["success"] is False
    assert body["error"] == "Failed to connect to upstream API"

    latest = (await client.get("/v1/sync")).json()["latestSync"]
    assert latest["status"] == "failed"


async def test_sync_without_any_token_is_rejected(client, upstream):
    r = await client.post("/v1/sync", json={})
    assert r.status_code == 400
    assert r.json()["details"]["type"] == "ConfigurationFailure"
    assert upstream.requests == []


async def test_invalid_batch_size_is_a_validation_error(client):
    r = await client.post("/v1/sync", json={"authToken": "tok", "batchSize": 0})
    assert r.status_code == 422


async def test_stored_config_is_used_when_token_omitted(client, upstream):
    upstream.active = [make_record(1)]
    await _save_config(client)

    r = await client.post("/v1/sync", json={})

    assert r.status_code == 200
    assert r.json()["stats"]["new"] == 1
    assert {req.headers["authorization"] for req in upstream.requests} == {"stored-token"}


async def test_failed_connection_test_does_not_store_config(client, upstream):
    upstream.connection_ok = False

    r = await client.post(
        "/v1/upstream/test-connection",
        json={"authToken": "tok", "baseUrl": UPSTREAM_URL},
        headers=ADMIN,
    )
    assert r.json() == {"success": False, "error": "Failed to connect to upstream API"}

    r = await client.post("/v1/sync", json={})
    assert r.status_code == 400


async def test_connection_test_requires_admin_key(client):
    r = await client.post("/v1/upstream/test-connection", json={"authToken": "tok"})
    assert r.status_code == 403


async def test_scheduled_sync_requires_cron_secret(client):
    r = await client.post("/v1/sync/scheduled")
    assert r.status_code == 401

    r = await client.post("/v1/sync/scheduled", headers={"authorization": "Bearer nope"})
    assert r.status_code == 401


async def test_scheduled_sync_goes_incremental_after_first_run(client, upstream):
    upstream.active = [make_record(1)]
    await _save_config(client)

    r = await client.post("/v1/sync/scheduled", headers=CRON)
    assert r.status_code == 200
    assert r.json()["success"] is True
    assert "UpdateDateFromUTC" not in upstream.bodies[0]

    r = await client.post("/v1/sync/scheduled", headers={"authorization": "Bearer test-cron-secret"})
    assert r.status_code == 200
    assert "UpdateDateFromUTC" in upstream.bodies[-2]

    sessions = (await client.get("/v1/sync/sessions")).json()["sessions"]
    assert [s["sync_type"] for s in sessions] == ["incremental", "full"]


async def test_scheduled_status_reports_health(client, upstream):
    r = await client.get("/v1/sync/scheduled")
    body = r.json()
    assert body["isHealthy"] is False
    assert body["latestSession"] is None
    assert body["schedule"]["endpoint"] == "/v1/sync/scheduled"

    upstream.active = [make_record(1), make_record(2, StatusID=2)]
    await client.post("/v1/sync", json={"authToken": "tok"})

    body = (await client.get("/v1/sync/scheduled")).json()
    assert body["isHealthy"] is True
    assert body["totalActiveProperties"] == 1


async def test_session_listing_respects_limit(client, upstream):
    for _ in range(3):
        await client.post("/v1/sync", json={"authToken": "tok"})

    r = await client.get("/v1/sync/sessions", params={"limit": 2})
    assert len(r.json()["sessions"]) == 2


async def test_single_property_sync(client, upstream, gateway):
    upstream.by_id[77] = make_record(77, price=450.0)
    await _save_config(client)

    r = await client.post("/v1/sync/properties/77", headers=ADMIN)
    assert r.status_code == 200
    body = r.json()
    assert body["action"] == "created"
    assert body["upstreamId"] == 77
    assert (await gateway.get_by_upstream_id(77)).price == 450.0

    r = await client.post("/v1/sync/properties/78", headers=ADMIN)
    assert r.status_code == 404


async def test_single_property_sync_requires_admin_key(client):
    r = await client.post("/v1/sync/properties/77")
    assert r.status_code == 403


async def test_lookup_sync(client, upstream):
    upstream.lookups = {
        "floors": [{"Id": 1, "Value": "Ισόγειο"}, {"Id": 2, "Value": "1ος"}],
        "HeatingType": [{"Id": 5, "Value": "Αυτόνομη"}, {"Value": "no id"}],
    }
    await _save_config(client)

    r = await client.post("/v1/lookups/sync", headers=ADMIN)

    assert r.status_code == 200
    assert r.json() == {"success": True, "types": len(LOOKUP_TYPES), "saved": 3, "failed": 1}
    assert all(req.headers.get("Language") == "4" for req in upstream.requests if "/lookups/" in req.url.path)


async def test_all_records_failing_returns_error_envelope(client, upstream):
    upstream.active = [make_record(1, price=None), make_record(2, price=None)]

    r = await client.post("/v1/sync", json={"authToken": "tok"})

    assert r.status_code == 200
    body = r.json()
    assert body["success"] is False
    assert body["stats"]["failed"] == 2
    assert body["error"] == "Property 1: Price is missing; Property 2: Price is missing"
    assert body["details"] == {"status": "failed", "errors": body["errors"]}


async def test_guard_failures_use_error_envelope(client):
    r = await client.post("/v1/sync/scheduled")
    assert r.status_code == 401
    assert r.json() == {
        "success": False,
        "error": "Unauthorized",
        "details": {"type": "AuthenticationFailure", "message": "Unauthorized"},
    }

    r = await client.post("/v1/lookups/sync")
    assert r.status_code == 403
    assert r.json()["success"] is False
    assert r.json()["details"]["type"] == "PermissionFailure"


async def test_unexpected_errors_use_error_envelope(session_factory):
    class BrokenReceiver:
        async def handle(self, event, **kwargs):
            raise RuntimeError("boom")

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_receiver] = lambda: BrokenReceiver()
    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
            r = await ac.post(
                "/v1/webhook",
                json={"event": "property.deleted", "property_id": 1},
                headers={"x-webhook-secret": "test-webhook-secret"},
            )
    finally:
        app.dependency_overrides.clear()

    assert r.status_code == 500
    assert r.json() == {"success": False, "error": "Internal server error", "details": {"type": "RuntimeError"}}


async def test_scheduled_status_reports_rate_limit_budget(client):
    body = (await client.get("/v1/sync/scheduled")).json()
    budget = body["rateLimit"]
    assert budget["limitPerMinute"] == get_rate_limiter().limit
    assert budget["remaining"] <= budget["limitPerMinute"]


async def test_stored_rate_limit_drives_shared_limiter(session_factory):
    limiter = get_rate_limiter()
    original = limiter.limit
    try:
        await get_client_factory(session_factory)
        assert limiter.limit == original

        async with session_factory() as db:
            await save_config(db, auth_token="tok", api_base_url=UPSTREAM_URL, rate_limit_per_minute=25)
            await db.commit()

        await get_client_factory(session_factory)
        assert limiter.limit == 25
    finally:
        limiter.set_limit(original)
