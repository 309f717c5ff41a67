from listing_sync.core.config import settings
from listing_sync.services.upstream_config import ActiveUpstreamConfig
from worker import tasks
from worker.celery_app import celery


def test_beat_runs_incremental_sync_on_poll_interval():
    entry = celery.conf.beat_schedule["incremental-sync"]
    assert entry["task"] == "worker.tasks.scheduled_sync"
    assert entry["schedule"] == settings.sync_poll_minutes * 60.0
    assert entry["kwargs"] == {"sync_type": "incremental", "include_deleted": True}


def test_sync_tasks_are_registered_on_sync_queue():
    assert tasks.scheduled_sync.name == "worker.tasks.scheduled_sync"
    assert tasks.sync_lookups.name == "worker.tasks.sync_lookups"
    for name in ("worker.tasks.scheduled_sync", "worker.tasks.sync_lookups"):
        assert celery.conf.task_routes[name] == {"queue": "sync"}


def test_task_limiter_follows_stored_rate_limit():
    cfg = ActiveUpstreamConfig(
        id="cfg_1",
        auth_token="tok",
        api_base_url="https://upstream.test",
        rate_limit_per_minute=4,
        polling_interval_minutes=15,
    )
    assert tasks._limiter(cfg).limit == 4
