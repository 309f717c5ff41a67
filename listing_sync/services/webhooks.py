from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace

from listing_sync.core.dates import to_upstream_iso, utcnow
from listing_sync.core.errors import ConfigurationFailure, UpstreamRejection, ValidationFailure
from listing_sync.models.property import STATUS_DELETED
from listing_sync.schemas.webhook import WebhookEvent
from listing_sync.services.gateway import PropertyGateway
from listing_sync.services.sync_sessions import SyncSessionStore, SyncStats
from listing_sync.upstream.client import ClientFactory

log = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SUPPORTED_EVENTS = ("created", "updated", "deleted", "status_changed")


class ChangeNotificationReceiver:
    """
    Applies one upstream push event through the same gateway the sync runs use.

    Every handled event leaves exactly one `webhook` sync session behind,
    including failures (best effort) and no-ops for unknown properties.
    """

    def __init__(self, *, gateway: PropertyGateway, sessions: SyncSessionStore, client_factory: ClientFactory):
        self.gateway = gateway
        self.sessions = sessions
        self.client_factory = client_factory

    async def handle(
        self,
        event: WebhookEvent,
        *,
        auth_token: str | None = None,
        base_url: str | None = None,
    ) -> dict[str, Any]:
        kind = event.kind
        if kind not in SUPPORTED_EVENTS:
            raise ValidationFailure(f"Unknown event type: {event.event}", status_code=400)

        with tracer.start_as_current_span("webhook.handle") as span:
            span.set_attribute("webhook.event", kind)
            span.set_attribute("webhook.upstream_id", event.property_id)
            try:
                if kind in ("created", "updated"):
                    result, stats = await self._upsert(event, auth_token=auth_token, base_url=base_url)
                else:
                    result, stats = await self._status_change(event)

                await self.sessions.record(
                    sync_type="webhook",
                    status="completed",
                    stats=stats,
                    api_responses=[{"webhook_payload": event.model_dump(mode="json")}],
                )
            except Exception as e:
                log.exception("webhook %s for upstream_id=%s failed", event.event, event.property_id)
                await self._record_failure(event, e)
                raise

        if result.get("outcome") != "skipped":
            await self.gateway.refresh_search_view()
        return result

    async def _upsert(
        self, event: WebhookEvent, *, auth_token: str | None, base_url: str | None
    ) -> tuple[dict[str, Any], SyncStats]:
        payload = dict(event.data) if event.data else None
        if payload is None:
            if not auth_token or not base_url:
                raise ConfigurationFailure("Upstream API not configured")
            async with self.client_factory(auth_token, base_url) as client:
                prop = await client.fetch_property_by_id(event.property_id)
            if prop is None:
                raise UpstreamRejection(f"Property {event.property_id} not found upstream")
            payload = prop.raw_payload
        payload.setdefault("Id", event.property_id)

        upserted = await self.gateway.upsert_from_upstream(payload, newer_only=True, actor="webhook")
        stats = SyncStats(
            total=1,
            new=1 if upserted.action == "created" else 0,
            updated=1 if upserted.action == "updated" else 0,
        )
        return {
            "action": event.event,
            "property_id": upserted.property_id,
            "upstream_id": event.property_id,
            "outcome": upserted.action,
            "warnings": upserted.warnings,
        }, stats

    async def _status_change(self, event: WebhookEvent) -> tuple[dict[str, Any], SyncStats]:
        if event.kind == "deleted":
            new_status = STATUS_DELETED
        else:
            if event.changes is None or event.changes.new_status is None:
                raise ValidationFailure("status_changed event requires changes.new_status", status_code=400)
            new_status = event.changes.new_status

        existing = await self.gateway.get_by_upstream_id(event.property_id)
        if existing is None:
            log.info("webhook %s: upstream_id=%s not stored locally, nothing to do", event.event, event.property_id)
            return {
                "action": event.event,
                "property_id": None,
                "upstream_id": event.property_id,
                "outcome": "skipped",
            }, SyncStats(total=1)

        payload = {
            **(existing.raw_payload or {}),
            "Id": event.property_id,
            "StatusID": new_status,
            "UpdateDate": event.timestamp or to_upstream_iso(utcnow()),
        }
        upserted = await self.gateway.upsert_from_upstream(payload, actor="webhook")

        stats = SyncStats(total=1)
        if event.kind == "deleted":
            stats.deleted = 1
        else:
            stats.updated = 1
        result: dict[str, Any] = {
            "action": event.event,
            "property_id": upserted.property_id,
            "upstream_id": event.property_id,
            "outcome": upserted.action,
        }
        if event.kind == "status_changed":
            result["old_status"] = event.changes.old_status
            result["new_status"] = new_status
        return result, stats

    async def _record_failure(self, event: WebhookEvent, exc: Exception) -> None:
        try:
            await self.sessions.record(
                sync_type="webhook",
                status="failed",
                stats=SyncStats(total=1, failed=1),
                error_message=str(exc) or type(exc).__name__,
                error_details={"type": type(exc).__name__, "event": event.model_dump(mode="json")},
            )
        except Exception:
            log.exception("could not record failed webhook session for upstream_id=%s", event.property_id)
