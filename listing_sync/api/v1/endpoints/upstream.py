import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_sync.api.deps import get_client_factory
from listing_sync.core.config import settings
from listing_sync.core.db import get_db, get_session_factory
from listing_sync.schemas.sync import ConnectionTestRequest
from listing_sync.services.internal_admin import require_internal_admin
from listing_sync.services.lookups import sync_lookups
from listing_sync.services.scheduling import load_active_config
from listing_sync.services.upstream_config import save_config
from listing_sync.upstream.client import ClientFactory

log = logging.getLogger(__name__)

router = APIRouter()


@router.post("/upstream/test-connection", dependencies=[Depends(require_internal_admin)])
async def test_upstream_connection(
    payload: ConnectionTestRequest,
    db: AsyncSession = Depends(get_db),
    clients: ClientFactory = Depends(get_client_factory),
) -> dict:
    base_url = payload.base_url or settings.upstream_base_url
    async with clients(payload.auth_token, base_url) as client:
        ok = await client.test_connection()

    if not ok:
        log.info("connection test failed for %s, config not saved", base_url)
        return {"success": False, "error": "Failed to connect to upstream API"}

    row = await save_config(db, auth_token=payload.auth_token, api_base_url=base_url, actor="api")
    await db.commit()
    return {"success": True, "message": "Connection successful, configuration saved", "configId": row.id}


@router.post("/lookups/sync", dependencies=[Depends(require_internal_admin)])
async def trigger_lookup_sync(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    clients: ClientFactory = Depends(get_client_factory),
) -> dict:
    cfg = await load_active_config(session_factory)
    async with clients(cfg.auth_token, cfg.api_base_url) as client:
        result = await sync_lookups(client, session_factory, language_id=settings.upstream_language_id)
    return {"success": True, "types": result.types, "saved": result.saved, "failed": result.failed}
