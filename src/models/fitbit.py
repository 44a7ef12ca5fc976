"""Request/response schemas for the Fitbit connection and sync endpoints."""

from __future__ import annotations

from datetime import date, datetime

from pydantic import Field, model_validator

from src.models.base import HealthHubBase


# ---------- Sync ----------

class SyncRequest(HealthHubBase):
    """Manual sync body.  Every field is optional.

    ``startDate``/``endDate`` pin an explicit range; otherwise ``days``
    widens the computed incremental window.
    """

    start_date: date | None = None
    end_date: date | None = None
    data_types: list[str] | None = None
    days: int | None = Field(default=None, ge=1, le=1095)

    @model_validator(mode="after")
    def _check_range(self) -> SyncRequest:
        if self.end_date is not None and self.start_date is None:
            raise ValueError("endDate requires startDate")
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("startDate must be on or before endDate")
        return self


class ResourceErrorRead(HealthHubBase):
    type: str
    message: str


class SyncResponse(HealthHubBase):
    success: bool
    synced_at: datetime
    rows_written: int = 0
    errors: list[ResourceErrorRead] = Field(default_factory=list)


class AutoSyncResponse(HealthHubBase):
    connected: bool
    synced: bool
    message: str
    last_synced_at: datetime | None = None
    next_sync_after: datetime | None = None
    success: bool | None = None
    errors: list[ResourceErrorRead] = Field(default_factory=list)


# ---------- Connection ----------

class StatusResponse(HealthHubBase):
    connected: bool
    last_synced_at: datetime | None = None
    initial_sync_completed: bool = False
    needs_sync: bool = False
    provider_user_id: str | None = None
    scopes: list[str] = Field(default_factory=list)
    expires_at: datetime | None = None
    is_expired: bool = False


class DisconnectResponse(HealthHubBase):
    success: bool
    disconnected: bool


# ---------- Cron ----------

class CronItemRead(HealthHubBase):
    user_index: int
    success: bool
    error: str | None = None


class CronResponse(HealthHubBase):
    success: bool
    processed: int
    success_count: int
    fail_count: int
    results: list[CronItemRead]
