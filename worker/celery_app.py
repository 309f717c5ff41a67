from celery import Celery

from listing_sync.core.config import settings

celery = Celery(
    "listing-sync-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.scheduled_sync": {"queue": "sync"},
        "worker.tasks.sync_lookups": {"queue": "sync"},
    },
    beat_schedule={
        "incremental-sync": {
            "task": "worker.tasks.scheduled_sync",
            "schedule": settings.sync_poll_minutes * 60.0,
            "kwargs": {"sync_type": "incremental", "include_deleted": True},
        },
        "lookups-daily": {
            "task": "worker.tasks.sync_lookups",
            "schedule": 24 * 60 * 60.0,
        },
    },
)
