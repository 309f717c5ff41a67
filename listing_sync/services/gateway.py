from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from listing_sync.core.dates import as_utc, utcnow
from listing_sync.core.errors import PersistenceFailure, ValidationFailure
from listing_sync.models.property import (
    STATUS_ACTIVE,
    Property,
    PropertyBasement,
    PropertyCharacteristic,
    PropertyDistance,
    PropertyFlag,
    PropertyImage,
    PropertyParking,
    PropertyPartner,
)
from listing_sync.services.locks import KeyedLocks
from listing_sync.upstream.schemas import AD_TEXT_KEY, DESCRIPTION_KEY, TITLE_KEY, UpstreamProperty

log = logging.getLogger(__name__)

SEARCH_VIEW = "property_search_optimized"
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# (collection, model, row builder); each one is replaced in its own transaction
CHILD_COLLECTIONS = (
    ("images", PropertyImage, "_rows_images"),
    ("characteristics", PropertyCharacteristic, "_rows_characteristics"),
    ("partner", PropertyPartner, "_rows_partner"),
    ("distances", PropertyDistance, "_rows_distances"),
    ("parkings", PropertyParking, "_rows_parkings"),
    ("basements", PropertyBasement, "_rows_basements"),
    ("flags", PropertyFlag, "_rows_flags"),
)


@dataclass(frozen=True)
class UpsertResult:
    property_id: str
    action: str  # "created" | "updated" | "skipped"
    warnings: list[str] = field(default_factory=list)


def is_newer(incoming: datetime | None, stored: datetime | None) -> bool:
    # a missing timestamp reads as the epoch on either side
    return (as_utc(incoming) or _EPOCH) > (as_utc(stored) or _EPOCH)


def validate_upstream_property(prop: UpstreamProperty, *, language_id: int) -> list[str]:
    """
    Raise ValidationFailure for records we refuse to store; return soft warnings.
    Price 0 is a real price, only a missing one is rejected.
    """
    if prop.id is None:
        raise ValidationFailure("Upstream record has no Id")
    if prop.price is None:
        raise ValidationFailure(f"Property {prop.id}: Price is missing", detail={"upstream_id": prop.id})

    warnings: list[str] = []
    if not prop.localized_text(TITLE_KEY, language_id):
        warnings.append(f"Property {prop.id}: no title for language {language_id}")
    return warnings


def scalar_values(prop: UpstreamProperty, *, language_id: int) -> dict[str, Any]:
    return {
        "category_id": prop.category_id,
        "subcategory_id": prop.subcategory_id,
        "aim_id": prop.aim_id,
        "custom_code": prop.custom_code,
        "price": prop.price,
        "sqr_meters": prop.sqr_meters,
        "price_per_sqrm": prop.price_per_sqrm,
        "building_year": prop.building_year,
        "plot_sqr_meters": prop.plot_sqr_meters,
        "rooms": prop.rooms,
        "master_bedrooms": prop.master_bedrooms,
        "bathrooms": prop.bathrooms,
        "wc": prop.wc,
        "area_id": prop.area_id,
        "subarea_id": prop.subarea_id,
        "latitude": prop.latitude,
        "longitude": prop.longitude,
        "postal_code": prop.postal_code,
        "energy_class_id": prop.energy_class_id,
        "floor_id": prop.floor_id,
        "levels": prop.levels,
        "total_parkings": prop.total_parkings,
        "title": prop.localized_text(TITLE_KEY, language_id),
        "description": prop.localized_text(DESCRIPTION_KEY, language_id),
        "ad_text": prop.localized_text(AD_TEXT_KEY, language_id),
        "primary_image_url": prop.primary_image_url(),
        "send_date": prop.send_date,
        "update_date": prop.update_date,
        "token": prop.token,
        "is_sync": prop.is_sync,
        "status_id": prop.status_id if prop.status_id is not None else STATUS_ACTIVE,
        "raw_payload": prop.raw_payload,
    }


class PropertyGateway:
    """
    The one write path from upstream records into local storage.

    upsert_from_upstream matches on upstream id. The core row is written in a
    single transaction; afterwards every child collection is deleted and
    re-inserted in its own transaction, so a failing collection leaves the
    core row and its siblings committed and comes back as a warning.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        language_id: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._language_id = language_id
        self._clock = clock
        self._locks = KeyedLocks()

    async def upsert_from_upstream(
        self,
        record: UpstreamProperty | dict[str, Any],
        *,
        newer_only: bool = False,
        actor: str = "sync",
    ) -> UpsertResult:
        prop = record if isinstance(record, UpstreamProperty) else UpstreamProperty.from_payload(record)
        warnings = validate_upstream_property(prop, language_id=self._language_id)
        for w in warnings:
            log.warning("upsert: %s", w)

        async with self._locks.hold(prop.id):
            property_id, action = await self._write_core(prop, newer_only=newer_only, actor=actor)
            if action == "skipped":
                return UpsertResult(property_id=property_id, action=action, warnings=warnings)

            warnings = warnings + await self._replace_children(property_id, prop)

        return UpsertResult(property_id=property_id, action=action, warnings=warnings)

    async def _write_core(self, prop: UpstreamProperty, *, newer_only: bool, actor: str) -> tuple[str, str]:
        try:
            return await self._write_core_once(prop, newer_only=newer_only, actor=actor)
        except IntegrityError:
            # Another writer inserted the same upstream id between our SELECT and INSERT
            log.info("upsert: concurrent insert for upstream_id=%s, retrying as update", prop.id)
            try:
                return await self._write_core_once(prop, newer_only=newer_only, actor=actor)
            except SQLAlchemyError as e:
                raise PersistenceFailure(f"Property {prop.id}: core row write failed: {e}") from e
        except SQLAlchemyError as e:
            raise PersistenceFailure(f"Property {prop.id}: core row write failed: {e}") from e

    async def _write_core_once(self, prop: UpstreamProperty, *, newer_only: bool, actor: str) -> tuple[str, str]:
        async with self._session_factory() as db:
            async with db.begin():
                if db.get_bind().dialect.name == "postgresql":
                    # serializes writers of this upstream id across processes until commit
                    await db.execute(select(func.pg_advisory_xact_lock(prop.id)))

                existing = (await db.execute(
                    select(Property).where(Property.upstream_id == prop.id).with_for_update()
                )).scalar_one_or_none()

                if existing is not None and newer_only and not is_newer(prop.update_date, existing.update_date):
                    return existing.id, "skipped"

                values = scalar_values(prop, language_id=self._language_id)
                now = self._clock()

                if existing is None:
                    row = Property(
                        upstream_id=prop.id,
                        **values,
                        last_synced_at=now,
                        created_by=actor,
                        updated_by=actor,
                    )
                    db.add(row)
                    await db.flush()
                    return row.id, "created"

                for key, value in values.items():
                    setattr(existing, key, value)
                existing.last_synced_at = now
                existing.updated_by = actor
                return existing.id, "updated"

    async def _replace_children(self, property_id: str, prop: UpstreamProperty) -> list[str]:
        warnings: list[str] = []
        for name, model, builder in CHILD_COLLECTIONS:
            try:
                rows = getattr(self, builder)(prop)
                async with self._session_factory() as db:
                    async with db.begin():
                        await db.execute(delete(model).where(model.property_id == property_id))
                        if rows:
                            db.add_all([model(property_id=property_id, **r) for r in rows])
            except Exception as e:
                msg = f"Property {prop.id}: {name} replacement failed: {type(e).__name__}: {e}"
                log.warning("upsert: %s", msg)
                warnings.append(msg)
        return warnings

    @staticmethod
    def _rows_images(prop: UpstreamProperty) -> list[dict[str, Any]]:
        return [
            {"upstream_image_id": img.id, "order_num": img.order_num, "url": img.url, "thumb_url": img.thumb_url}
            for img in prop.images
        ]

    @staticmethod
    def _rows_characteristics(prop: UpstreamProperty) -> list[dict[str, Any]]:
        return [
            {
                "upstream_characteristic_id": c.id,
                "language_id": c.language_id,
                "title": c.title,
                "value": c.value,
                "lookup_type": c.lookup_type,
            }
            for c in prop.characteristics
        ]

    @staticmethod
    def _rows_partner(prop: UpstreamProperty) -> list[dict[str, Any]]:
        p = prop.partner
        if p is None:
            return []
        return [{
            "upstream_partner_id": p.id,
            "firstname": p.firstname,
            "lastname": p.lastname,
            "email": p.email,
            "phone": p.phone,
            "photo_url": p.photo_url,
        }]

    @staticmethod
    def _rows_distances(prop: UpstreamProperty) -> list[dict[str, Any]]:
        return [
            {"place_id": d.place_id, "distance": d.distance, "measure_id": d.measure_id, "descriptions": d.description}
            for d in prop.distances
        ]

    @staticmethod
    def _rows_parkings(prop: UpstreamProperty) -> list[dict[str, Any]]:
        return [{"data": _as_object(p)} for p in prop.parkings]

    @staticmethod
    def _rows_basements(prop: UpstreamProperty) -> list[dict[str, Any]]:
        return [{"data": _as_object(b)} for b in prop.basements]

    @staticmethod
    def _rows_flags(prop: UpstreamProperty) -> list[dict[str, Any]]:
        return [{"data": _as_object(f)} for f in prop.flags]

    async def get_by_upstream_id(self, upstream_id: int) -> Property | None:
        async with self._session_factory() as db:
            return (await db.execute(
                select(Property).where(Property.upstream_id == upstream_id)
            )).scalar_one_or_none()

    async def get_raw_payload(self, upstream_id: int) -> dict[str, Any] | None:
        async with self._session_factory() as db:
            return (await db.execute(
                select(Property.raw_payload).where(Property.upstream_id == upstream_id)
            )).scalar_one_or_none()

    async def count_active(self) -> int:
        async with self._session_factory() as db:
            return (await db.execute(
                select(func.count()).select_from(Property).where(Property.status_id == STATUS_ACTIVE)
            )).scalar_one()

    async def refresh_search_view(self) -> bool:
        """Best effort; returns False when the view could not be refreshed."""
        try:
            async with self._session_factory() as db:
                if db.get_bind().dialect.name != "postgresql":
                    log.debug("search view refresh skipped: not supported on %s", db.get_bind().dialect.name)
                    return False
                async with db.begin():
                    await db.execute(text(f"REFRESH MATERIALIZED VIEW {SEARCH_VIEW}"))
            return True
        except SQLAlchemyError as e:
            log.warning("search view refresh failed: %s", e)
            return False


def _as_object(item: Any) -> dict[str, Any]:
    return item if isinstance(item, dict) else {"value": item}
