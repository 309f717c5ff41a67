from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from opentelemetry import trace

from listing_sync.core.errors import ConfigurationFailure, SyncError, TransportFailure, UpstreamRejection
from listing_sync.models.property import STATUS_DELETED
from listing_sync.services.gateway import PropertyGateway
from listing_sync.services.retry import compute_backoff_seconds, is_retryable
from listing_sync.services.sync_sessions import SyncSessionStore, SyncStats
from listing_sync.upstream.client import ClientFactory, UpstreamClient
from listing_sync.upstream.schemas import PropertyFilter

log = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SyncType = Literal["full", "incremental"]


@dataclass(frozen=True)
class SyncRequest:
    auth_token: str | None
    base_url: str | None
    sync_type: SyncType = "full"
    include_deleted: bool = False
    last_sync_date: datetime | None = None
    batch_size: int | None = None


@dataclass
class SyncResult:
    session_id: str
    status: str
    stats: SyncStats
    duration_seconds: float
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == "completed"


@dataclass(frozen=True)
class OrchestratorOptions:
    batch_size: int = 10
    batch_pause_seconds: float = 0.1
    fetch_max_attempts: int = 3
    max_pages: int = 500
    run_deadline_seconds: float | None = 3600.0


@dataclass
class _Fetched:
    records: list[dict[str, Any]]
    responses: list[dict[str, Any]]


class SyncOrchestrator:
    """
    Runs one full or incremental sync: connect, fetch every page, upsert in
    concurrent batches, finalize the session.

    Per-record failures are counted and never abort the run. Anything that
    escapes that boundary (configuration, connection, fetch) is written into
    the session and re-raised.
    """

    def __init__(
        self,
        *,
        gateway: PropertyGateway,
        sessions: SyncSessionStore,
        client_factory: ClientFactory,
        options: OrchestratorOptions | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.sessions = sessions
        self.client_factory = client_factory
        self.options = options or OrchestratorOptions()
        self._sleep = sleep
        self._monotonic = monotonic

    async def run(self, req: SyncRequest, *, cancel: asyncio.Event | None = None) -> SyncResult:
        sync_type: SyncType = req.sync_type
        if sync_type == "incremental" and req.last_sync_date is None:
            log.info("incremental sync requested without lastSyncDate, falling back to full sync")
            sync_type = "full"
        since = req.last_sync_date if sync_type == "incremental" else None

        with tracer.start_as_current_span("sync.run") as span:
            span.set_attribute("sync.type", sync_type)
            span.set_attribute("sync.include_deleted", req.include_deleted)

            session_id = await self.sessions.create(
                sync_type=sync_type,
                status_id=1,
                include_deleted=req.include_deleted,
                update_date_from_utc=since,
            )
            span.set_attribute("sync.session_id", session_id)

            stats = SyncStats()
            errors: list[str] = []
            responses: list[dict[str, Any]] = []
            started = self._monotonic()

            try:
                if not req.auth_token or not req.base_url:
                    raise ConfigurationFailure("Upstream auth token and base URL are required")

                await self.sessions.mark_syncing(session_id)
                async with self.client_factory(req.auth_token, req.base_url) as client:
                    log.info("sync %s: connecting", session_id)
                    if not await client.test_connection():
                        raise TransportFailure("Failed to connect to upstream API", status_code=400)

                    log.info("sync %s: fetching (type=%s since=%s)", session_id, sync_type, since)
                    active = await self._fetch_all(client, PropertyFilter(status_id=1, update_date_from_utc=since))
                    responses.extend(active.responses)

                    deleted = _Fetched(records=[], responses=[])
                    if req.include_deleted:
                        try:
                            deleted = await self._fetch_all(
                                client,
                                PropertyFilter(
                                    status_id=STATUS_DELETED,
                                    update_date_from_utc=since,
                                    include_deleted_from_crm=True,
                                ),
                            )
                        except SyncError as e:
                            log.warning("sync %s: deleted-records fetch failed: %s", session_id, e)
                            errors.append(f"Deleted properties fetch failed: {e}")
                        responses.extend(deleted.responses)

                stats.total = len(active.records) + len(deleted.records)
                log.info(
                    "sync %s: processing %d active and %d deleted records",
                    session_id, len(active.records), len(deleted.records),
                )
                batch_size = req.batch_size or self.options.batch_size
                deadline = (
                    started + self.options.run_deadline_seconds
                    if self.options.run_deadline_seconds is not None
                    else None
                )
                work = [(r, False) for r in active.records] + [(r, True) for r in deleted.records]
                await self._process(work, batch_size, stats, errors, deadline=deadline, cancel=cancel)

            except Exception as e:
                log.exception("sync %s failed", session_id)
                detail = e.as_detail() if isinstance(e, SyncError) else {"type": type(e).__name__, "message": str(e)}
                await self.sessions.finalize(
                    session_id,
                    status="failed",
                    stats=stats,
                    error_message=str(e),
                    error_details={**detail, "errors": errors},
                    api_responses=responses,
                )
                span.set_attribute("sync.status", "failed")
                raise

            status = "failed" if errors and stats.new == 0 and stats.updated == 0 else "completed"
            row = await self.sessions.finalize(
                session_id,
                status=status,
                stats=stats,
                error_message="; ".join(errors) if errors else None,
                error_details={"errors": errors} if errors else None,
                api_responses=responses,
            )
            span.set_attribute("sync.status", status)

        await self.gateway.refresh_search_view()

        return SyncResult(
            session_id=session_id,
            status=status,
            stats=stats,
            duration_seconds=row.duration_seconds or 0.0,
            errors=errors,
        )

    async def _fetch_all(self, client: UpstreamClient, flt: PropertyFilter) -> _Fetched:
        out = _Fetched(records=[], responses=[])
        page_url: str | None = None

        with tracer.start_as_current_span("sync.fetch") as span:
            span.set_attribute("sync.status_id", flt.status_id)
            for page_no in range(1, self.options.max_pages + 1):
                page = await self._fetch_page(client, flt, page_url)
                out.responses.append({"status_id": flt.status_id, "page": page_no, **page.summary()})
                if not page.success:
                    raise UpstreamRejection(
                        f"Upstream refused property fetch: {page.error or 'unknown error'}",
                        detail=page.summary(),
                    )
                out.records.extend(page.records)
                if not page.next_page:
                    break
                page_url = page.next_page
            else:
                log.warning("fetch stopped after %d pages (status_id=%s)", self.options.max_pages, flt.status_id)

            span.set_attribute("sync.records", len(out.records))
        return out

    async def _fetch_page(self, client: UpstreamClient, flt: PropertyFilter, page_url: str | None):
        attempt = 0
        while True:
            attempt += 1
            try:
                return await client.fetch_properties(flt, detailed=True, page_url=page_url)
            except SyncError as e:
                if attempt >= self.options.fetch_max_attempts or not is_retryable(e):
                    raise
                delay = compute_backoff_seconds(attempt)
                log.warning("page fetch failed (attempt %d), retrying in %.1fs: %s", attempt, delay, e)
                await self._sleep(delay)

    async def _process(
        self,
        work: list[tuple[dict[str, Any], bool]],
        batch_size: int,
        stats: SyncStats,
        errors: list[str],
        *,
        deadline: float | None,
        cancel: asyncio.Event | None,
    ) -> None:
        batches = [work[i:i + batch_size] for i in range(0, len(work), batch_size)]

        for n, batch in enumerate(batches):
            if cancel is not None and cancel.is_set():
                errors.append(f"Sync cancelled; {len(batches) - n} batch(es) not processed")
                log.warning("sync cancelled before batch %d/%d", n + 1, len(batches))
                return
            if deadline is not None and self._monotonic() >= deadline:
                errors.append(f"Sync deadline exceeded; {len(batches) - n} batch(es) not processed")
                log.warning("sync deadline exceeded before batch %d/%d", n + 1, len(batches))
                return

            if n:
                await self._sleep(self.options.batch_pause_seconds)

            outcomes = await asyncio.gather(
                *(self._process_one(record, deleted) for record, deleted in batch),
                return_exceptions=True,
            )
            for (record, deleted), outcome in zip(batch, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    upstream_id = record.get("Id") if isinstance(record, dict) else None
                    msg = str(outcome) or type(outcome).__name__
                    if not msg.startswith(f"Property {upstream_id}"):
                        msg = f"Property {upstream_id}: {msg}"
                    log.warning("record failed: %s", msg)
                    stats.failed += 1
                    errors.append(msg)
                    continue

                if deleted:
                    stats.deleted += 1
                elif outcome == "created":
                    stats.new += 1
                elif outcome == "updated":
                    stats.updated += 1

    async def _process_one(self, record: dict[str, Any], deleted: bool) -> str:
        result = await self.gateway.upsert_from_upstream(record, newer_only=not deleted, actor="sync")
        return result.action
