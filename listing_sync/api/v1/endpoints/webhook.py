from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_sync.api.deps import get_receiver
from listing_sync.core.dates import utcnow
from listing_sync.core.db import get_session_factory
from listing_sync.schemas.webhook import WebhookEvent
from listing_sync.services.internal_admin import require_webhook_secret
from listing_sync.services.upstream_config import get_active_config
from listing_sync.services.webhooks import SUPPORTED_EVENTS, ChangeNotificationReceiver

router = APIRouter()


@router.post("/webhook", dependencies=[Depends(require_webhook_secret)])
async def receive_webhook(
    event: WebhookEvent,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    receiver: ChangeNotificationReceiver = Depends(get_receiver),
) -> dict:
    auth_token = base_url = None
    # only created/updated without a payload need the upstream API
    if event.kind in ("created", "updated") and not event.data:
        async with session_factory() as db:
            cfg = await get_active_config(db)
        if cfg is not None:
            auth_token, base_url = cfg.auth_token, cfg.api_base_url

    result = await receiver.handle(event, auth_token=auth_token, base_url=base_url)
    return {
        "success": True,
        "event": event.event,
        "timestamp": utcnow().isoformat(),
        "result": result,
    }


@router.get("/webhook")
async def verify_webhook(challenge: str | None = Query(default=None)) -> dict:
    if challenge:
        return {"challenge": challenge}
    return {"status": "Upstream webhook endpoint active", "timestamp": utcnow().isoformat()}


@router.get("/webhook/config")
async def webhook_config(request: Request) -> dict:
    return {
        "success": True,
        "webhookUrl": str(request.url_for("receive_webhook")),
        "supportedEvents": [f"property.{e}" for e in SUPPORTED_EVENTS],
        "headers": {"x-webhook-secret": "<WEBHOOK_SECRET>", "Content-Type": "application/json"},
        "verification": {"method": "GET", "query": "challenge", "response": {"challenge": "<echoed value>"}},
    }
