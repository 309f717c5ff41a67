from datetime import datetime

from sqlalchemy import Boolean, Float, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from listing_sync.core.ids import id_factory
from listing_sync.models.base import Base, JSONType

SYNC_TYPES = ("full", "incremental", "webhook", "csv_import")


class SyncSession(Base):
    """
    Append-only audit record of one sync attempt.

    Lifecycle: pending -> syncing -> completed | failed. Once completed_at is
    set the row is final; SyncSessionStore refuses further writes to it.
    """
    __tablename__ = "sync_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=id_factory("syn"))

    sync_type: Mapped[str] = mapped_column(String(30), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending")

    # Fetch window parameters
    status_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    include_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    update_date_from_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    update_date_to_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    send_date_from_utc: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    total_properties: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    new_properties: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_properties: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deleted_properties: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_properties: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    api_responses: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
