from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_sync.models.lookup import UpstreamLookup
from listing_sync.upstream.client import UpstreamClient

log = logging.getLogger(__name__)


@dataclass
class LookupSyncResult:
    types: int = 0
    saved: int = 0
    failed: int = 0


async def sync_lookups(
    client: UpstreamClient,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    language_id: int = 4,
) -> LookupSyncResult:
    """Refresh upstream_lookups from every lookup type; bad rows are logged and skipped."""
    lookups = await client.fetch_all_lookups(language_id)
    result = LookupSyncResult(types=len(lookups))

    for lookup_type, entries in lookups.items():
        for entry in entries:
            lookup_id = entry.get("Id")
            if not isinstance(lookup_id, int):
                log.warning("lookup %s: entry without numeric Id skipped: %r", lookup_type, entry)
                result.failed += 1
                continue
            try:
                await _upsert_lookup(session_factory, lookup_type, lookup_id, language_id, entry)
                result.saved += 1
            except SQLAlchemyError as e:
                log.warning("lookup %s/%s save failed: %s", lookup_type, lookup_id, e)
                result.failed += 1

    log.info("lookups synced: types=%d saved=%d failed=%d", result.types, result.saved, result.failed)
    return result


async def _upsert_lookup(
    session_factory: async_sessionmaker[AsyncSession],
    lookup_type: str,
    lookup_id: int,
    language_id: int,
    entry: dict[str, Any],
) -> None:
    value = entry.get("Value")
    async with session_factory() as db:
        async with db.begin():
            row = (await db.execute(
                select(UpstreamLookup).where(
                    UpstreamLookup.lookup_type == lookup_type,
                    UpstreamLookup.lookup_id == lookup_id,
                    UpstreamLookup.language_id == language_id,
                )
            )).scalar_one_or_none()
            if row is None:
                db.add(UpstreamLookup(
                    lookup_type=lookup_type,
                    lookup_id=lookup_id,
                    language_id=language_id,
                    value=None if value is None else str(value),
                    raw_data=entry,
                ))
            else:
                row.value = None if value is None else str(value)
                row.raw_data = entry
