from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class SyncRunRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Falls back to the active upstream config when omitted
    auth_token: str | None = Field(default=None, alias="authToken")
    sync_type: Literal["full", "incremental"] = Field(default="full", alias="syncType")
    include_deleted: bool = Field(default=False, alias="includeDeleted")
    last_sync_date: datetime | None = Field(default=None, alias="lastSyncDate")
    batch_size: int | None = Field(default=None, alias="batchSize", ge=1, le=100)


class ScheduledSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sync_type: Literal["full", "incremental"] = Field(default="incremental", alias="syncType")
    include_deleted: bool = Field(default=True, alias="includeDeleted")
    batch_size: int = Field(default=10, alias="batchSize", ge=1, le=100)


class SyncStatsOut(BaseModel):
    total: int
    new: int
    updated: int
    deleted: int
    failed: int


class SyncRunResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    sync_session_id: str = Field(alias="syncSessionId")
    stats: SyncStatsOut
    duration: float
    errors: list[str] | None = None
    # set only when success is false
    error: str | None = None
    details: dict[str, Any] | None = None


class SyncSessionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sync_type: str
    status: str
    status_id: int | None = None
    include_deleted: bool
    update_date_from_utc: datetime | None = None
    update_date_to_utc: datetime | None = None
    total_properties: int
    new_properties: int
    updated_properties: int
    deleted_properties: int
    failed_properties: int
    error_message: str | None = None
    error_details: dict[str, Any] | None = None
    started_at: datetime
    completed_at: datetime | None = None
    duration_seconds: float | None = None


class ConnectionTestRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    auth_token: str = Field(alias="authToken", min_length=1)
    base_url: str | None = Field(default=None, alias="baseUrl")
