"""Health data synchronization engine.

Pulls activity samples from a device health store (HealthKit, Google Fit),
turns them into deduplicated activity records, attributes them to the
user's active goals and uploads them to the backend in idempotent batches,
recording every pass in a sync log.
"""

from healthsync.sync.base import (
    ActivityCategory,
    ActivityRecord,
    ConnectionState,
    ConnectionStatus,
    DateRange,
    Goal,
    HealthConnection,
    HealthPermission,
    HealthSample,
    PermissionResult,
    ProviderId,
    SyncErrorEntry,
    SyncLog,
    SyncResult,
    SyncStatus,
    SyncType,
)
from healthsync.sync.errors import (
    BackendError,
    BatchUploadError,
    ConfigValidationError,
    ConnectionNotFoundError,
    DisconnectError,
    DuplicateActivityError,
    HealthSyncError,
    InvalidDateRangeError,
    NoPermissionsGrantedError,
    ProviderFetchError,
    ProviderUnavailableError,
    SyncLogCreationError,
)
from healthsync.sync.service import HealthService, build_health_service

__all__ = [
    "ActivityCategory",
    "ActivityRecord",
    "BackendError",
    "BatchUploadError",
    "ConfigValidationError",
    "ConnectionNotFoundError",
    "ConnectionState",
    "ConnectionStatus",
    "DateRange",
    "DisconnectError",
    "DuplicateActivityError",
    "Goal",
    "HealthConnection",
    "HealthPermission",
    "HealthSample",
    "HealthService",
    "HealthSyncError",
    "InvalidDateRangeError",
    "NoPermissionsGrantedError",
    "PermissionResult",
    "ProviderFetchError",
    "ProviderId",
    "ProviderUnavailableError",
    "SyncErrorEntry",
    "SyncLog",
    "SyncLogCreationError",
    "SyncResult",
    "SyncStatus",
    "SyncType",
    "build_health_service",
]
