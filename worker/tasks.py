import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from worker.celery_app import celery
from listing_sync.api.deps import orchestrator_options
from listing_sync.core.config import settings
import listing_sync.models  # noqa: F401  # ensures Models are registered
from listing_sync.services.gateway import PropertyGateway
from listing_sync.services.lookups import sync_lookups as _sync_lookups
from listing_sync.services.orchestrator import SyncOrchestrator
from listing_sync.services.scheduling import load_active_config, run_scheduled_sync
from listing_sync.services.sync_sessions import SyncSessionStore
from listing_sync.services.upstream_config import ActiveUpstreamConfig
from listing_sync.upstream.client import client_factory
from listing_sync.upstream.rate_limit import FixedWindowRateLimiter

log = logging.getLogger(__name__)


def _limiter(cfg: ActiveUpstreamConfig) -> FixedWindowRateLimiter:
    # each task gets its own event loop, so the limiter (and its lock) is per task
    return FixedWindowRateLimiter(limit=cfg.rate_limit_per_minute or settings.upstream_rate_limit_per_minute)


async def _scheduled_sync(sync_type: str, include_deleted: bool, batch_size: int | None) -> dict:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    try:
        cfg = await load_active_config(Session)
        orchestrator = SyncOrchestrator(
            gateway=PropertyGateway(Session, language_id=settings.upstream_language_id),
            sessions=SyncSessionStore(Session),
            client_factory=client_factory(_limiter(cfg), timeout_seconds=settings.upstream_timeout_seconds),
            options=orchestrator_options(),
        )
        result = await run_scheduled_sync(
            orchestrator,
            Session,
            sync_type=sync_type,
            include_deleted=include_deleted,
            batch_size=batch_size,
        )
        return {
            "session_id": result.session_id,
            "status": result.status,
            "stats": result.stats.as_dict(),
            "duration": result.duration_seconds,
        }
    finally:
        await engine.dispose()


async def _sync_lookups_async() -> dict:
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    try:
        cfg = await load_active_config(Session)
        clients = client_factory(_limiter(cfg), timeout_seconds=settings.upstream_timeout_seconds)
        async with clients(cfg.auth_token, cfg.api_base_url) as client:
            result = await _sync_lookups(client, Session, language_id=settings.upstream_language_id)
        return {"types": result.types, "saved": result.saved, "failed": result.failed}
    finally:
        await engine.dispose()


@celery.task(name="worker.tasks.scheduled_sync")
def scheduled_sync(sync_type: str = "incremental", include_deleted: bool = True, batch_size: int | None = None) -> dict:
    log.info("scheduled_sync task: type=%s include_deleted=%s", sync_type, include_deleted)
    return asyncio.run(_scheduled_sync(sync_type, include_deleted, batch_size))


@celery.task(name="worker.tasks.sync_lookups")
def sync_lookups() -> dict:
    return asyncio.run(_sync_lookups_async())
