import asyncio
from datetime import datetime, timezone

import pytest

from conftest import UPSTREAM_URL, make_record
from listing_sync.core.errors import ConfigurationFailure, TransportFailure, UpstreamRejection
from listing_sync.services.orchestrator import OrchestratorOptions, SyncOrchestrator, SyncRequest


def _request(**kwargs) -> SyncRequest:
    return SyncRequest(auth_token="tok", base_url=UPSTREAM_URL, **kwargs)


async def test_one_invalid_record_does_not_fail_the_run(orchestrator, upstream, sessions):
    upstream.active = [make_record(i) for i in range(1, 6)]
    upstream.active[2]["Price"] = None

    result = await orchestrator.run(_request())

    assert result.stats.total == 5
    assert result.stats.new == 4
    assert result.stats.failed == 1
    assert result.status == "completed"
    assert result.success is True
    assert result.errors == ["Property 3: Price is missing"]

    row = await sessions.get(result.session_id)
    assert row.status == "completed"
    assert row.failed_properties == 1
    assert "Property 3" in row.error_message
    assert row.error_details == {"errors": result.errors}


async def test_record_errors_name_the_property_once(orchestrator, upstream, gateway, monkeypatch):
    upstream.active = [make_record(1), make_record(2)]
    real_upsert = gateway.upsert_from_upstream

    async def flaky_upsert(record, **kwargs):
        if record["Id"] == 2:
            raise RuntimeError("connection reset")
        return await real_upsert(record, **kwargs)

    monkeypatch.setattr(gateway, "upsert_from_upstream", flaky_upsert)

    result = await orchestrator.run(_request())

    assert result.stats.new == 1
    assert result.errors == ["Property 2: connection reset"]


async def test_full_sync_new_stale_and_fresh_records(orchestrator, upstream, gateway):
    await gateway.upsert_from_upstream(make_record(102, update_date="2024-01-01T00:00:00Z", price=200.0))
    await gateway.upsert_from_upstream(make_record(103, update_date="2024-05-01T00:00:00Z", price=300.0))
    fresh_before = await gateway.get_by_upstream_id(103)

    upstream.active = [
        make_record(101),
        make_record(102, update_date="2024-03-01T00:00:00Z", price=250.0),
        make_record(103, update_date="2024-05-01T00:00:00Z", price=999.0),
    ]

    result = await orchestrator.run(_request(sync_type="full"))

    assert (result.stats.new, result.stats.updated, result.stats.failed) == (1, 1, 0)
    assert result.stats.total == 3
    assert (await gateway.get_by_upstream_id(102)).price == 250.0

    fresh_after = await gateway.get_by_upstream_id(103)
    assert fresh_after.price == 300.0
    assert fresh_after.last_synced_at == fresh_before.last_synced_at
    assert fresh_after.raw_payload == fresh_before.raw_payload


async def test_connection_failure_fails_before_fetching(orchestrator, upstream, sessions):
    upstream.connection_ok = False
    upstream.active = [make_record(1)]

    with pytest.raises(TransportFailure, match="Failed to connect"):
        await orchestrator.run(_request())

    assert upstream.bodies == []
    row = await sessions.latest()
    assert row.status == "failed"
    assert row.error_message == "Failed to connect to upstream API"
    assert row.completed_at is not None
    assert row.total_properties == 0


async def test_missing_token_is_a_configuration_failure(orchestrator, upstream, sessions):
    with pytest.raises(ConfigurationFailure):
        await orchestrator.run(SyncRequest(auth_token=None, base_url=UPSTREAM_URL))

    assert upstream.requests == []
    row = await sessions.latest()
    assert row.status == "failed"
    assert row.error_details["type"] == "ConfigurationFailure"


async def test_incremental_without_baseline_runs_as_full(orchestrator, upstream, sessions):
    upstream.active = [make_record(1)]

    result = await orchestrator.run(_request(sync_type="incremental"))

    assert "UpdateDateFromUTC" not in upstream.bodies[0]
    row = await sessions.get(result.session_id)
    assert row.sync_type == "full"


async def test_incremental_sends_update_date_filter(orchestrator, upstream, sessions):
    since = datetime(2024, 5, 1, tzinfo=timezone.utc)

    result = await orchestrator.run(_request(sync_type="incremental", last_sync_date=since))

    assert upstream.bodies[0]["UpdateDateFromUTC"] == "2024-05-01T00:00:00.000Z"
    row = await sessions.get(result.session_id)
    assert row.sync_type == "incremental"


async def test_include_deleted_marks_records_deleted(orchestrator, upstream, gateway):
    existing = await gateway.upsert_from_upstream(make_record(201))
    upstream.active = [make_record(202)]
    upstream.deleted = [make_record(201, StatusID=2, update_date="2024-05-02T00:00:00Z")]

    result = await orchestrator.run(_request(include_deleted=True))

    assert result.stats.total == 2
    assert result.stats.new == 1
    assert result.stats.deleted == 1
    assert [b["StatusID"] for b in upstream.bodies] == ["1", "2"]
    assert upstream.bodies[1]["IncludeDeletedFromCrm"] is True

    prop = await gateway.get_by_upstream_id(201)
    assert prop.id == existing.property_id
    assert prop.status_id == 2


async def test_deleted_fetch_failure_is_recorded_not_fatal(orchestrator, upstream):
    upstream.active = [make_record(1)]
    upstream.fail_status = {2: [400]}

    result = await orchestrator.run(_request(include_deleted=True))

    assert result.status == "completed"
    assert result.stats.new == 1
    assert any("Deleted properties fetch failed" in e for e in result.errors)


async def test_transient_page_errors_are_retried(orchestrator, upstream, sleeps):
    upstream.active = [make_record(1)]
    upstream.fail_status = {1: [503, 502]}

    result = await orchestrator.run(_request())

    assert result.stats.new == 1
    assert len(upstream.bodies) == 3
    assert len(sleeps) == 2


async def test_rejected_fetch_fails_the_run(orchestrator, upstream, sessions):
    upstream.fail_status = {1: [400]}

    with pytest.raises(UpstreamRejection):
        await orchestrator.run(_request())

    assert len(upstream.bodies) == 1
    row = await sessions.latest()
    assert row.status == "failed"
    assert row.error_details["upstream_status"] == 400


async def test_all_pages_are_followed(orchestrator, upstream, sessions):
    upstream.page_size = 2
    upstream.active = [make_record(i) for i in range(1, 6)]

    result = await orchestrator.run(_request())

    assert result.stats.total == 5
    assert result.stats.new == 5
    assert len(upstream.bodies) == 3
    row = await sessions.get(result.session_id)
    assert [r["page"] for r in row.api_responses] == [1, 2, 3]


async def test_batches_are_paced(gateway, sessions, upstream, sleeps, orchestrator):
    upstream.active = [make_record(i) for i in range(1, 6)]

    await orchestrator.run(_request(batch_size=2))

    assert sleeps == [0.1, 0.1]


async def test_deadline_stops_remaining_batches(gateway, sessions, upstream):
    ticks = iter([0.0, 1.0, 20.0])

    async def no_sleep(_):
        return None

    orch = SyncOrchestrator(
        gateway=gateway,
        sessions=sessions,
        client_factory=upstream.factory,
        options=OrchestratorOptions(batch_size=2, batch_pause_seconds=0, run_deadline_seconds=10),
        sleep=no_sleep,
        monotonic=lambda: next(ticks),
    )
    upstream.active = [make_record(i) for i in range(1, 6)]

    result = await orch.run(_request())

    assert result.stats.total == 5
    assert result.stats.new == 2
    assert result.status == "completed"
    assert any("deadline" in e for e in result.errors)


async def test_cancelled_run_processes_nothing(orchestrator, upstream):
    upstream.active = [make_record(1), make_record(2)]
    cancel = asyncio.Event()
    cancel.set()

    result = await orchestrator.run(_request(), cancel=cancel)

    assert result.stats.new == 0
    assert result.status == "failed"
    assert any("cancelled" in e for e in result.errors)
