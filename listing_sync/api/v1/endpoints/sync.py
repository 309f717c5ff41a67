from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_sync.api.deps import get_client_factory, get_gateway, get_orchestrator, get_rate_limiter, get_session_store
from listing_sync.core.config import settings
from listing_sync.core.dates import utcnow
from listing_sync.core.db import get_session_factory
from listing_sync.core.errors import SyncError
from listing_sync.schemas.sync import (
    ScheduledSyncRequest,
    SyncRunRequest,
    SyncRunResponse,
    SyncSessionOut,
    SyncStatsOut,
)
from listing_sync.services.gateway import PropertyGateway
from listing_sync.services.internal_admin import require_cron_secret, require_internal_admin
from listing_sync.services.orchestrator import SyncOrchestrator, SyncRequest, SyncResult
from listing_sync.services.scheduling import get_sync_stats, load_active_config, run_scheduled_sync, sync_single_property
from listing_sync.services.sync_sessions import SyncSessionStore
from listing_sync.services.upstream_config import get_active_config
from listing_sync.upstream.client import ClientFactory
from listing_sync.upstream.rate_limit import FixedWindowRateLimiter

router = APIRouter()


def _session_out(row) -> dict | None:
    if row is None:
        return None
    return SyncSessionOut.model_validate(row).model_dump(mode="json")


def _run_response(result: SyncResult) -> dict:
    body = SyncRunResponse(
        success=result.success,
        sync_session_id=result.session_id,
        stats=SyncStatsOut(**result.stats.as_dict()),
        duration=result.duration_seconds,
        errors=result.errors or None,
    )
    if not result.success:
        # same envelope shape as raised errors: a readable message plus details
        body.error = "; ".join(result.errors) or f"Sync {result.status}"
        body.details = {"status": result.status, "errors": result.errors}
    return body.model_dump(by_alias=True, exclude_none=True)


@router.post("/sync")
async def trigger_sync(
    payload: SyncRunRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict:
    auth_token = payload.auth_token
    base_url = settings.upstream_base_url
    if not auth_token:
        async with session_factory() as db:
            cfg = await get_active_config(db)
        if cfg is not None:
            auth_token, base_url = cfg.auth_token, cfg.api_base_url

    result = await orchestrator.run(SyncRequest(
        auth_token=auth_token,
        base_url=base_url,
        sync_type=payload.sync_type,
        include_deleted=payload.include_deleted,
        last_sync_date=payload.last_sync_date,
        batch_size=payload.batch_size,
    ))
    return _run_response(result)


@router.get("/sync")
async def latest_sync(sessions: SyncSessionStore = Depends(get_session_store)) -> dict:
    return {"success": True, "latestSync": _session_out(await sessions.latest())}


@router.get("/sync/sessions")
async def list_sync_sessions(
    limit: int = Query(default=20, ge=1, le=200),
    sessions: SyncSessionStore = Depends(get_session_store),
) -> dict:
    rows = await sessions.list_recent(limit)
    return {"success": True, "sessions": [_session_out(r) for r in rows]}


@router.post("/sync/scheduled", dependencies=[Depends(require_cron_secret)])
async def scheduled_sync(
    payload: ScheduledSyncRequest | None = None,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    orchestrator: SyncOrchestrator = Depends(get_orchestrator),
) -> dict:
    payload = payload or ScheduledSyncRequest()
    result = await run_scheduled_sync(
        orchestrator,
        session_factory,
        sync_type=payload.sync_type,
        include_deleted=payload.include_deleted,
        batch_size=payload.batch_size,
    )
    return {**_run_response(result), "timestamp": utcnow().isoformat()}


@router.get("/sync/scheduled")
async def scheduled_sync_status(
    sessions: SyncSessionStore = Depends(get_session_store),
    gateway: PropertyGateway = Depends(get_gateway),
    limiter: FixedWindowRateLimiter = Depends(get_rate_limiter),
) -> dict:
    stats = await get_sync_stats(sessions, gateway)
    budget = limiter.peek()
    return {
        "success": True,
        "latestSession": _session_out(stats["latestSession"]),
        "totalActiveProperties": stats["totalActiveProperties"],
        "isHealthy": stats["isHealthy"],
        "rateLimit": {
            "limitPerMinute": limiter.limit,
            "remaining": budget.remaining,
            "resetSeconds": round(budget.reset_seconds, 1),
        },
        "schedule": {
            "intervalMinutes": settings.sync_poll_minutes,
            "endpoint": "/v1/sync/scheduled",
            "method": "POST",
            "headers": {"x-cron-secret": "<CRON_SECRET>", "Content-Type": "application/json"},
            "payload": {"syncType": "incremental", "includeDeleted": True, "batchSize": settings.sync_batch_size},
        },
    }


@router.post("/sync/properties/{upstream_id}", dependencies=[Depends(require_internal_admin)])
async def sync_one_property(
    upstream_id: int,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateway: PropertyGateway = Depends(get_gateway),
    clients: ClientFactory = Depends(get_client_factory),
) -> dict:
    cfg = await load_active_config(session_factory)
    result = await sync_single_property(gateway, clients, cfg, upstream_id)
    if result is None:
        raise SyncError(f"Property {upstream_id} not found upstream", status_code=404)
    return {
        "success": True,
        "propertyId": result.property_id,
        "upstreamId": upstream_id,
        "action": result.action,
        "warnings": result.warnings,
    }
