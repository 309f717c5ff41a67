from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_sync.core.dates import as_utc
from listing_sync.core.errors import ConfigurationFailure
from listing_sync.services.gateway import PropertyGateway, UpsertResult
from listing_sync.services.orchestrator import SyncOrchestrator, SyncRequest, SyncResult
from listing_sync.services.sync_sessions import SyncSessionStore
from listing_sync.services.upstream_config import ActiveUpstreamConfig, get_active_config
from listing_sync.upstream.client import ClientFactory

log = logging.getLogger(__name__)


async def load_active_config(session_factory: async_sessionmaker[AsyncSession]) -> ActiveUpstreamConfig:
    async with session_factory() as db:
        cfg = await get_active_config(db)
    if cfg is None or not cfg.auth_token:
        raise ConfigurationFailure("Upstream API not configured")
    return cfg


async def run_scheduled_sync(
    orchestrator: SyncOrchestrator,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    sync_type: str = "incremental",
    include_deleted: bool = True,
    batch_size: int | None = None,
) -> SyncResult:
    """
    Unattended sync with the stored config. Incremental runs start from when the
    last completed full/incremental run started, so records changed while that
    run was in flight are fetched again rather than missed.
    """
    cfg = await load_active_config(session_factory)

    last_sync_date = None
    if sync_type == "incremental":
        latest = await orchestrator.sessions.latest_completed()
        if latest is not None:
            last_sync_date = as_utc(latest.started_at)

    log.info("scheduled %s sync starting (since=%s)", sync_type, last_sync_date)
    return await orchestrator.run(SyncRequest(
        auth_token=cfg.auth_token,
        base_url=cfg.api_base_url,
        sync_type=sync_type,
        include_deleted=include_deleted,
        last_sync_date=last_sync_date,
        batch_size=batch_size,
    ))


async def get_sync_stats(sessions: SyncSessionStore, gateway: PropertyGateway) -> dict[str, Any]:
    latest = await sessions.latest()
    return {
        "latestSession": latest,
        "totalActiveProperties": await gateway.count_active(),
        "isHealthy": latest is not None and latest.status == "completed",
    }


async def sync_single_property(
    gateway: PropertyGateway,
    client_factory: ClientFactory,
    cfg: ActiveUpstreamConfig,
    upstream_id: int,
) -> UpsertResult | None:
    async with client_factory(cfg.auth_token, cfg.api_base_url) as client:
        prop = await client.fetch_property_by_id(upstream_id)
    if prop is None:
        log.info("single sync: upstream_id=%s not found upstream", upstream_id)
        return None
    return await gateway.upsert_from_upstream(prop, actor="internal")
