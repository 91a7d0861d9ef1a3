"""Canonical types for the health sync engine.

Providers produce ``HealthSample`` objects; the transformer turns them into
``ActivityRecord`` objects, which are the only thing the backend ever sees.
``HealthConnection`` and ``SyncLog`` are transient in-memory views of
backend-owned rows, rebuilt from the backend's JSON on every read.

All timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any

logger = logging.getLogger("healthsync.sync")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Coerce an ISO-8601 string or datetime to an aware UTC datetime.

    Naive values are assumed to be UTC.  Returns None for empty or
    unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            logger.warning("Could not parse timestamp: %r", value)
            return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class ProviderId(str, Enum):
    """Provider tag stored on connections, sync logs and activity records."""

    HEALTHKIT = "healthkit"
    GOOGLEFIT = "googlefit"


class ActivityCategory(str, Enum):
    """Activity categories shared by samples, records and goals."""

    STEPS = "steps"
    ACTIVE_MINUTES = "active_minutes"
    WORKOUTS = "workouts"
    DISTANCE = "distance"
    CALORIES = "calories"
    CUSTOM = "custom"  # manual logging only, never produced by a provider


SYNCABLE_CATEGORIES: tuple[ActivityCategory, ...] = (
    ActivityCategory.STEPS,
    ActivityCategory.ACTIVE_MINUTES,
    ActivityCategory.CALORIES,
    ActivityCategory.DISTANCE,
    ActivityCategory.WORKOUTS,
)


class HealthPermission(str, Enum):
    """Read permissions a provider can be asked for."""

    STEPS = "steps"
    ACTIVE_MINUTES = "active_minutes"
    WORKOUTS = "workouts"
    DISTANCE = "distance"
    CALORIES = "calories"
    HEART_RATE = "heart_rate"
    SLEEP = "sleep"


class SyncType(str, Enum):
    BACKGROUND = "background"
    MANUAL = "manual"
    INITIAL = "initial"
    CUSTOM = "custom"


class SyncStatus(str, Enum):
    """SyncLog lifecycle states.

    ``pending`` and ``syncing`` are open states; the other three are terminal.
    """

    PENDING = "pending"
    SYNCING = "syncing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SyncStatus.COMPLETED, SyncStatus.PARTIAL, SyncStatus.FAILED)


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    SYNCING = "syncing"


# ---------------------------------------------------------------------------
# Provider-side types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DateRange:
    """Half-open time window ``[start, end)`` used for sample queries."""

    start: datetime
    end: datetime

    @classmethod
    def lookback(cls, days: int, now: datetime | None = None) -> "DateRange":
        """Build the range for a sync pass looking back ``days`` days.

        The range starts at UTC midnight ``days`` days ago and ends at ``now``.
        """
        end = now or utc_now()
        return cls(start=start_of_day((end - timedelta(days=days)).date()), end=end)

    @property
    def days(self) -> float:
        return (self.end - self.start).total_seconds() / 86400

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass(frozen=True)
class PermissionResult:
    """Outcome of an authorization request or status check."""

    granted: tuple[HealthPermission, ...] = ()
    denied: tuple[HealthPermission, ...] = ()
    not_determined: tuple[HealthPermission, ...] = ()


@dataclass(frozen=True)
class HealthSample:
    """A raw, provider-native reading.

    Attributes:
        id:          Provider-local identifier (stable across queries).
        category:    Activity category the sample counts toward.
        value:       Numeric value in ``unit``.
        unit:        Unit of measurement as reported by the provider.
        start_date:  UTC start of the measured interval.
        end_date:    UTC end of the measured interval.
        source_name: Name of the app/device that wrote the sample.
        source_id:   Bundle id / data source id of the writer.
        metadata:    Anything else the provider returned.
    """

    id: str
    category: ActivityCategory
    value: float
    unit: str
    start_date: datetime
    end_date: datetime
    source_name: str = ""
    source_id: str = ""
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)


# ---------------------------------------------------------------------------
# Backend-bound types
# ---------------------------------------------------------------------------


@dataclass
class ActivityRecord:
    """Canonical, backend-bound activity.

    ``source_external_id`` is the deduplication key: the backend treats
    (user, source_external_id) as unique and silently absorbs repeats.
    ``challenge_ids`` holds every matching goal, soonest-ending first.
    """

    activity_type: ActivityCategory
    value: int
    unit: str
    source: ProviderId
    source_external_id: str
    recorded_at: datetime
    challenge_ids: list[str] = field(default_factory=list)

    @property
    def challenge_id(self) -> str | None:
        return self.challenge_ids[0] if self.challenge_ids else None

    def to_payload(self) -> dict[str, Any]:
        """Serialize to the JSON shape accepted by ``log_health_activity``."""
        return {
            "activity_type": self.activity_type.value,
            "value": self.value,
            "unit": self.unit,
            "source": self.source.value,
            "source_external_id": self.source_external_id,
            "recorded_at": self.recorded_at.isoformat(),
            "challenge_id": self.challenge_id,
            "challenge_ids": list(self.challenge_ids),
        }


@dataclass(frozen=True)
class Goal:
    """An active goal or challenge the user participates in."""

    goal_id: str
    category: ActivityCategory
    start_date: datetime
    end_date: datetime
    goal_value: int | None = None
    current_progress: int = 0

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Goal":
        return cls(
            goal_id=str(row["challenge_id"]),
            category=ActivityCategory(row["challenge_type"]),
            start_date=parse_timestamp(row["start_date"]),
            end_date=parse_timestamp(row["end_date"]),
            goal_value=row.get("goal_value"),
            current_progress=int(row.get("current_progress") or 0),
        )

    def covers(self, record: ActivityRecord) -> bool:
        return (
            self.category == record.activity_type
            and self.start_date <= record.recorded_at <= self.end_date
        )


@dataclass(frozen=True)
class BatchErrorEntry:
    """One error reported by the backend for a record in an upload batch."""

    error: str
    source_external_id: str | None = None
    details: str | None = None

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "BatchErrorEntry":
        return cls(
            error=str(data.get("error", "unknown_error")),
            source_external_id=data.get("source_external_id"),
            details=data.get("details"),
        )


@dataclass(frozen=True)
class BatchUploadResult:
    """Response of one ``upload_activity_batch`` call."""

    inserted: int = 0
    deduplicated: int = 0
    total_processed: int = 0
    errors: tuple[BatchErrorEntry, ...] = ()

    @classmethod
    def from_json(cls, data: dict[str, Any]) -> "BatchUploadResult":
        return cls(
            inserted=int(data.get("inserted", 0)),
            deduplicated=int(data.get("deduplicated", 0)),
            total_processed=int(data.get("total_processed", 0)),
            errors=tuple(BatchErrorEntry.from_json(e) for e in data.get("errors") or []),
        )


@dataclass
class HealthConnection:
    """In-memory view of a ``health_connections`` row."""

    id: str
    user_id: str | None
    provider: ProviderId
    is_active: bool
    connected_at: datetime | None = None
    last_sync_at: datetime | None = None
    disconnected_at: datetime | None = None
    permissions_granted: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "HealthConnection":
        return cls(
            id=str(row["id"]),
            user_id=str(row["user_id"]) if row.get("user_id") else None,
            provider=ProviderId(row["provider"]),
            is_active=bool(row.get("is_active", False)),
            connected_at=parse_timestamp(row.get("connected_at")),
            last_sync_at=parse_timestamp(row.get("last_sync_at")),
            disconnected_at=parse_timestamp(row.get("disconnected_at")),
            permissions_granted=list(row.get("permissions_granted") or []),
        )


@dataclass
class SyncLog:
    """In-memory view of a ``health_sync_logs`` row."""

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
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def errors(self) -> list[dict[str, Any]]:
        return list(self.metadata.get("errors", []))

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "SyncLog":
        return cls(
            id=str(row["id"]),
            provider=ProviderId(row["provider"]),
            sync_type=SyncType(row["sync_type"]),
            status=SyncStatus(row["status"]),
            started_at=parse_timestamp(row["started_at"]),
            completed_at=parse_timestamp(row.get("completed_at")),
            records_processed=int(row.get("records_processed") or 0),
            records_inserted=int(row.get("records_inserted") or 0),
            records_deduplicated=int(row.get("records_deduplicated") or 0),
            error_message=row.get("error_message"),
            metadata=dict(row.get("metadata") or {}),
        )


# ---------------------------------------------------------------------------
# Engine results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SyncErrorEntry:
    """A structured, non-fatal error collected during a sync pass.

    ``batch_index`` is the zero-based upload batch the error came from.
    ``record_count`` is how many records the error covers: 1 for a
    per-record backend rejection, the whole batch size for a batch that
    failed in transport.
    """

    error: str
    batch_index: int
    source_external_id: str | None = None
    details: str | None = None
    record_count: int = 1

    def to_json(self) -> dict[str, Any]:
        return {
            "error": self.error,
            "batch_index": self.batch_index,
            "source_external_id": self.source_external_id,
            "details": self.details,
            "record_count": self.record_count,
        }


@dataclass
class SyncResult:
    """Aggregated outcome of one sync pass.

    ``success`` is False whenever any batch or record reported an error;
    callers should treat that as "completed with issues", not as a failure.
    """

    success: bool
    sync_log_id: str
    records_processed: int = 0
    records_inserted: int = 0
    records_deduplicated: int = 0
    errors: list[SyncErrorEntry] = field(default_factory=list)
    duration_ms: int = 0

    @property
    def status(self) -> SyncStatus:
        return SyncStatus.COMPLETED if not self.errors else SyncStatus.PARTIAL


@dataclass(frozen=True)
class ConnectionState:
    """Result of ``ConnectionManager.get_connection_status``."""

    status: ConnectionStatus
    connection: HealthConnection | None = None
    last_sync: datetime | None = None


def start_of_day(day: date) -> datetime:
    return datetime(day.year, day.month, day.day, tzinfo=timezone.utc)
