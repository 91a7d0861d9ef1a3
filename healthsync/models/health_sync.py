"""Pydantic models for the health sync API: connections, sync runs, activities."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import Field

from healthsync.models.base import HealthSyncBase
from healthsync.sync.base import (
    ActivityCategory,
    ConnectionStatus,
    HealthPermission,
    ProviderId,
    SyncStatus,
    SyncType,
)


# ---------- Connections ----------

class ConnectionRead(HealthSyncBase):
    id: str
    provider: ProviderId
    is_active: bool
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    disconnected_at: datetime | None = None
    permissions_granted: list[str] = Field(default_factory=list)


class ConnectionStatusRead(HealthSyncBase):
    provider: ProviderId
    status: ConnectionStatus
    connection: ConnectionRead | None = None
    last_sync: datetime | None = None


class ConnectRequest(HealthSyncBase):
    permissions: list[HealthPermission] | None = None


# ---------- Sync ----------

class SyncRequest(HealthSyncBase):
    sync_type: SyncType = SyncType.MANUAL
    lookback_days: int | None = Field(default=None, ge=1, le=365)
    categories: list[ActivityCategory] | None = None


class SyncErrorRead(HealthSyncBase):
    error: str
    batch_index: int
    source_external_id: str | None = None
    details: str | None = None
    record_count: int = 1


class SyncResultRead(HealthSyncBase):
    success: bool
    status: SyncStatus
    sync_log_id: str
    records_processed: int
    records_inserted: int
    records_deduplicated: int
    errors: list[SyncErrorRead] = Field(default_factory=list)
    duration_ms: int


class SyncLogRead(HealthSyncBase):
    id: str
    provider: ProviderId
    sync_type: SyncType
    status: SyncStatus
    started_at: datetime
    completed_at: datetime | None = None
    records_processed: int = 0
    records_inserted: int = 0
    records_deduplicated: int = 0
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------- Activities ----------

class RecentActivityRead(HealthSyncBase):
    id: str
    activity_type: ActivityCategory
    value: int
    unit: str
    source: str
    recorded_at: datetime
    challenge_id: str | None = None
    challenge_title: str | None = None


class ManualActivityCreate(HealthSyncBase):
    challenge_id: str
    activity_type: ActivityCategory
    value: int = Field(gt=0)
    unit: str | None = None
    client_event_id: str = Field(
        min_length=1,
        description="Idempotency key generated once per user action and reused on retry.",
    )


class ManualActivityResult(HealthSyncBase):
    client_event_id: str
    inserted: bool
