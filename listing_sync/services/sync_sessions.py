from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_sync.core.dates import as_utc, utcnow
from listing_sync.core.errors import PersistenceFailure
from listing_sync.models.sync_session import SYNC_TYPES, SyncSession
from listing_sync.services.redaction import redact_payload

log = logging.getLogger(__name__)

FINAL_STATUSES = ("completed", "failed")


@dataclass
class SyncStats:
    total: int = 0
    new: int = 0
    updated: int = 0
    deleted: int = 0
    failed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class SyncSessionStore:
    """
    Append-only audit log of sync attempts.

    A session is created once and finalized once; after completed_at is set
    any further write is refused with PersistenceFailure.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], *, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    async def create(
        self,
        *,
        sync_type: str,
        status_id: int | None = None,
        include_deleted: bool = False,
        update_date_from_utc: datetime | None = None,
        send_date_from_utc: datetime | None = None,
    ) -> str:
        if sync_type not in SYNC_TYPES:
            raise ValueError(f"Unknown sync_type: {sync_type}")

        async with self._session_factory() as db:
            row = SyncSession(
                sync_type=sync_type,
                status="pending",
                status_id=status_id,
                include_deleted=include_deleted,
                update_date_from_utc=update_date_from_utc,
                send_date_from_utc=send_date_from_utc,
                api_responses=[],
                started_at=self._clock(),
            )
            db.add(row)
            await db.commit()
            log.info("sync session created id=%s type=%s", row.id, sync_type)
            return row.id

    async def mark_syncing(self, session_id: str) -> None:
        async with self._session_factory() as db:
            row = await self._open_row(db, session_id)
            row.status = "syncing"
            await db.commit()

    async def finalize(
        self,
        session_id: str,
        *,
        status: str,
        stats: SyncStats,
        update_date_to_utc: datetime | None = None,
        error_message: str | None = None,
        error_details: dict[str, Any] | None = None,
        api_responses: Sequence[dict[str, Any]] | None = None,
    ) -> SyncSession:
        if status not in FINAL_STATUSES:
            raise ValueError(f"Cannot finalize with status {status!r}")

        async with self._session_factory() as db:
            row = await self._open_row(db, session_id)
            now = self._clock()

            row.status = status
            row.total_properties = stats.total
            row.new_properties = stats.new
            row.updated_properties = stats.updated
            row.deleted_properties = stats.deleted
            row.failed_properties = stats.failed
            row.update_date_to_utc = update_date_to_utc
            row.error_message = error_message
            row.error_details = redact_payload(error_details) if error_details is not None else None
            if api_responses is not None:
                row.api_responses = redact_payload(list(api_responses))
            row.completed_at = now
            row.duration_seconds = max(0.0, (as_utc(now) - as_utc(row.started_at)).total_seconds())

            await db.commit()
            log.info(
                "sync session finalized id=%s status=%s total=%d new=%d updated=%d deleted=%d failed=%d",
                row.id, status, stats.total, stats.new, stats.updated, stats.deleted, stats.failed,
            )
            return row

    async def record(
        self,
        *,
        sync_type: str,
        status: str,
        stats: SyncStats,
        error_message: str | None = None,
        error_details: dict[str, Any] | None = None,
        api_responses: Sequence[dict[str, Any]] | None = None,
    ) -> str:
        """Create and finalize in one go (single-event channels)."""
        session_id = await self.create(sync_type=sync_type)
        await self.finalize(
            session_id,
            status=status,
            stats=stats,
            error_message=error_message,
            error_details=error_details,
            api_responses=api_responses,
        )
        return session_id

    async def get(self, session_id: str) -> SyncSession | None:
        async with self._session_factory() as db:
            return await db.get(SyncSession, session_id)

    async def latest(self) -> SyncSession | None:
        async with self._session_factory() as db:
            return (await db.execute(
                select(SyncSession).order_by(SyncSession.started_at.desc()).limit(1)
            )).scalar_one_or_none()

    async def latest_completed(self, sync_types: Sequence[str] = ("full", "incremental")) -> SyncSession | None:
        async with self._session_factory() as db:
            return (await db.execute(
                select(SyncSession)
                .where(SyncSession.status == "completed", SyncSession.sync_type.in_(list(sync_types)))
                .order_by(SyncSession.completed_at.desc())
                .limit(1)
            )).scalar_one_or_none()

    async def list_recent(self, limit: int = 20) -> list[SyncSession]:
        async with self._session_factory() as db:
            rows = (await db.execute(
                select(SyncSession).order_by(SyncSession.started_at.desc()).limit(limit)
            )).scalars().all()
            return list(rows)

    @staticmethod
    async def _open_row(db: AsyncSession, session_id: str) -> SyncSession:
        row = await db.get(SyncSession, session_id)
        if row is None:
            raise PersistenceFailure(f"Sync session {session_id} not found")
        if row.completed_at is not None:
            raise PersistenceFailure(f"Sync session {session_id} is already finalized")
        return row
