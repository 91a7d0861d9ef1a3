"""In-memory backend with the same semantics as the Supabase RPCs.

Used by the test suite and for local development (``HEALTH_BACKEND=memory``).
State lives in an ``InMemoryStore`` that several per-user backends can share,
mirroring how every Supabase session sees the same tables through RLS.

Failure injection::

    backend.fail_on("start_sync", BackendError("start_sync", "boom"))
    backend.fail_on("upload_activity_batch", RuntimeError("timeout"), times=1)
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from healthsync.sync.backends.base import HealthBackend, ManualActivity, RecentActivity
from healthsync.sync.base import (
    ActivityCategory,
    ActivityRecord,
    BatchErrorEntry,
    BatchUploadResult,
    Goal,
    HealthConnection,
    ProviderId,
    SyncLog,
    SyncStatus,
    SyncType,
    utc_now,
)
from healthsync.sync.config_loader import SyncConfig, get_sync_config
from healthsync.sync.errors import (
    BackendError,
    ConnectionNotFoundError,
    DuplicateActivityError,
)

logger = logging.getLogger("healthsync.sync.backends.memory")

_PROVIDER_SOURCES = {p.value for p in ProviderId}


@dataclass
class InMemoryStore:
    """Tables shared by every ``InMemoryHealthBackend`` built on it."""

    connections: dict[tuple[str, str], dict[str, Any]] = field(default_factory=dict)
    sync_logs: dict[str, dict[str, Any]] = field(default_factory=dict)
    activities: list[dict[str, Any]] = field(default_factory=list)
    goals: dict[str, list[dict[str, Any]]] = field(default_factory=dict)

    def add_goal(
        self,
        user_id: str,
        category: ActivityCategory,
        start_date: datetime,
        end_date: datetime,
        goal_value: int | None = None,
        title: str = "",
        goal_id: str | None = None,
        status: str = "active",
    ) -> str:
        """Enrol ``user_id`` in a goal; returns the goal id."""
        goal_id = goal_id or str(uuid.uuid4())
        self.goals.setdefault(user_id, []).append({
            "challenge_id": goal_id,
            "challenge_type": category.value,
            "start_date": start_date,
            "end_date": end_date,
            "goal_value": goal_value,
            "current_progress": 0,
            "title": title,
            "status": status,
        })
        return goal_id

    def goal_progress(self, user_id: str, goal_id: str) -> int:
        for row in self.goals.get(user_id, []):
            if row["challenge_id"] == goal_id:
                return row["current_progress"]
        raise KeyError(goal_id)


class InMemoryHealthBackend(HealthBackend):
    """``HealthBackend`` over an ``InMemoryStore``.

    Args:
        user_id: Session user; None behaves like a signed-out session.
        store:   Shared tables; a fresh store by default.
        clock:   Source of "now" for server-side timestamps and bounds.
        config:  Sync config for the upload acceptance window.
    """

    def __init__(
        self,
        user_id: str | None = "user-1",
        store: InMemoryStore | None = None,
        clock: Callable[[], datetime] = utc_now,
        config: SyncConfig | None = None,
    ) -> None:
        self.user_id = user_id
        self.store = store or InMemoryStore()
        self._clock = clock
        self._config = config or get_sync_config()
        self.calls: list[str] = []
        self.upload_batches: list[list[ActivityRecord]] = []
        self._failures: dict[str, tuple[BaseException, int | None]] = {}

    # ------------------------------------------------------------------
    # Test hooks
    # ------------------------------------------------------------------

    def fail_on(
        self, operation: str, error: BaseException, times: int | None = None
    ) -> None:
        """Make ``operation`` raise ``error``; ``times=None`` fails forever."""
        self._failures[operation] = (error, times)

    def clear_failures(self) -> None:
        self._failures.clear()

    def _enter(self, operation: str) -> str:
        self.calls.append(operation)
        if operation in self._failures:
            error, times = self._failures[operation]
            if times is not None:
                if times <= 1:
                    del self._failures[operation]
                else:
                    self._failures[operation] = (error, times - 1)
            raise error
        if self.user_id is None:
            raise BackendError(operation, "authentication_required", retryable=False)
        return self.user_id

    # ------------------------------------------------------------------
    # HealthBackend
    # ------------------------------------------------------------------

    async def current_user_id(self) -> str | None:
        self.calls.append("current_user_id")
        return self.user_id

    async def connect_provider(
        self, provider: ProviderId, permissions: Sequence[str]
    ) -> str:
        user_id = self._enter("connect_provider")
        key = (user_id, provider.value)
        row = self.store.connections.get(key)
        if row is None:
            row = {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "provider": provider.value,
                "connected_at": self._clock(),
                "last_sync_at": None,
            }
            self.store.connections[key] = row
        row.update(
            is_active=True,
            permissions_granted=list(permissions),
            disconnected_at=None,
        )
        return row["id"]

    async def get_connection(self, provider: ProviderId) -> HealthConnection:
        user_id = self._enter("get_connection")
        row = self.store.connections.get((user_id, provider.value))
        if row is None:
            raise ConnectionNotFoundError(provider.value)
        return HealthConnection.from_row(row)

    async def disconnect_provider(self, provider: ProviderId) -> None:
        user_id = self._enter("disconnect_provider")
        row = self.store.connections.get((user_id, provider.value))
        if row is not None:
            row.update(is_active=False, disconnected_at=self._clock())

    async def find_in_progress_sync(self, provider: ProviderId) -> SyncLog | None:
        user_id = self._enter("find_in_progress_sync")
        for row in self._user_logs(user_id, provider):
            if not SyncStatus(row["status"]).is_terminal:
                return SyncLog.from_row(row)
        return None

    async def start_sync(self, provider: ProviderId, sync_type: SyncType) -> str:
        user_id = self._enter("start_sync")
        log_id = str(uuid.uuid4())
        self.store.sync_logs[log_id] = {
            "id": log_id,
            "user_id": user_id,
            "provider": provider.value,
            "sync_type": sync_type.value,
            "status": SyncStatus.SYNCING.value,
            "started_at": self._clock(),
            "completed_at": None,
            "records_processed": 0,
            "records_inserted": 0,
            "records_deduplicated": 0,
            "error_message": None,
            "metadata": {},
        }
        return log_id

    async def complete_sync(
        self,
        sync_log_id: str,
        status: SyncStatus,
        records_processed: int = 0,
        records_inserted: int = 0,
        records_deduplicated: int = 0,
        error_message: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        user_id = self._enter("complete_sync")
        row = self.store.sync_logs.get(sync_log_id)
        if row is None or row["user_id"] != user_id:
            return
        now = self._clock()
        row.update(
            status=status.value,
            completed_at=now,
            records_processed=records_processed,
            records_inserted=records_inserted,
            records_deduplicated=records_deduplicated,
            error_message=error_message,
            metadata=dict(metadata or {}),
        )
        if status == SyncStatus.COMPLETED:
            conn = self.store.connections.get((user_id, row["provider"]))
            if conn is not None and conn["is_active"]:
                conn["last_sync_at"] = now

    async def get_sync_history(
        self, provider: ProviderId, limit: int = 20, offset: int = 0
    ) -> list[SyncLog]:
        user_id = self._enter("get_sync_history")
        rows = self._user_logs(user_id, provider)[offset:offset + limit]
        return [SyncLog.from_row(r) for r in rows]

    async def upload_activity_batch(
        self, records: Sequence[ActivityRecord]
    ) -> BatchUploadResult:
        user_id = self._enter("upload_activity_batch")
        self.upload_batches.append(list(records))

        now = self._clock()
        oldest = now - timedelta(days=self._config.upload.max_age_days)
        newest = now + timedelta(minutes=self._config.upload.max_future_minutes)

        inserted = deduplicated = 0
        errors: list[BatchErrorEntry] = []
        for record in records:
            payload = record.to_payload()
            ext_id = payload.get("source_external_id")
            error = self._record_error(payload, record.recorded_at, oldest, newest)
            if error:
                errors.append(BatchErrorEntry(error=error, source_external_id=ext_id))
                continue
            if self._find_activity(user_id, source_external_id=ext_id):
                deduplicated += 1
                continue
            self.store.activities.append({
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "challenge_id": payload["challenge_id"],
                "activity_type": payload["activity_type"],
                "value": payload["value"],
                "unit": payload["unit"] or payload["activity_type"],
                "source": payload["source"],
                "source_external_id": ext_id,
                "client_event_id": None,
                "recorded_at": record.recorded_at,
                "created_at": now,
            })
            inserted += 1
            if payload["challenge_id"]:
                self._add_progress(user_id, payload["challenge_id"], payload["value"])

        return BatchUploadResult(
            inserted=inserted,
            deduplicated=deduplicated,
            total_processed=inserted + deduplicated + len(errors),
            errors=tuple(errors),
        )

    async def get_active_goals_for_sync(self) -> list[Goal]:
        user_id = self._enter("get_active_goals_for_sync")
        rows = [r for r in self.store.goals.get(user_id, []) if r["status"] == "active"]
        return [Goal.from_row(r) for r in sorted(rows, key=lambda r: r["end_date"])]

    async def get_recent_activities(
        self, limit: int = 50, offset: int = 0
    ) -> list[RecentActivity]:
        user_id = self._enter("get_recent_activities")
        titles = {g["challenge_id"]: g["title"] for g in self.store.goals.get(user_id, [])}
        rows = sorted(
            (
                a for a in self.store.activities
                if a["user_id"] == user_id and a["source"] in _PROVIDER_SOURCES
            ),
            key=lambda a: a["recorded_at"],
            reverse=True,
        )
        return [
            RecentActivity.from_row({**a, "challenge_title": titles.get(a["challenge_id"])})
            for a in rows[offset:offset + limit]
        ]

    async def log_activity(self, activity: ManualActivity) -> None:
        user_id = self._enter("log_activity")
        now = self._clock()

        goal = next(
            (
                g for g in self.store.goals.get(user_id, [])
                if g["challenge_id"] == activity.challenge_id
            ),
            None,
        )
        if goal is None:
            raise BackendError("log_activity", "not_participant", code="P0001", retryable=False)
        if goal["status"] != "active" or not goal["start_date"] <= now < goal["end_date"]:
            raise BackendError("log_activity", "challenge_not_active", code="P0001", retryable=False)
        if activity.value <= 0:
            raise BackendError("log_activity", "invalid_value", code="P0001", retryable=False)
        if self._find_activity(user_id, client_event_id=activity.client_event_id):
            raise DuplicateActivityError(activity.client_event_id)

        self.store.activities.append({
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "challenge_id": activity.challenge_id,
            "activity_type": activity.activity_type.value,
            "value": activity.value,
            "unit": activity.unit or activity.activity_type.value,
            "source": "manual",
            "source_external_id": None,
            "client_event_id": activity.client_event_id,
            "recorded_at": now,  # manual entries always use server time
            "created_at": now,
        })
        goal["current_progress"] += activity.value

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _user_logs(self, user_id: str, provider: ProviderId) -> list[dict[str, Any]]:
        rows = [
            r for r in self.store.sync_logs.values()
            if r["user_id"] == user_id and r["provider"] == provider.value
        ]
        # Insertion order breaks started_at ties
        ordered = sorted(enumerate(rows), key=lambda p: (p[1]["started_at"], p[0]), reverse=True)
        return [row for _, row in ordered]

    def _find_activity(self, user_id: str, **match: Any) -> dict[str, Any] | None:
        for row in self.store.activities:
            if row["user_id"] == user_id and all(row.get(k) == v for k, v in match.items()):
                return row
        return None

    def _add_progress(self, user_id: str, goal_id: str, value: int) -> None:
        for row in self.store.goals.get(user_id, []):
            if row["challenge_id"] == goal_id:
                row["current_progress"] += value

    @staticmethod
    def _record_error(
        payload: dict[str, Any],
        recorded_at: datetime | None,
        oldest: datetime,
        newest: datetime,
    ) -> str | None:
        if not payload.get("activity_type"):
            return "missing_activity_type"
        if payload.get("value") is None:
            return "missing_value"
        if not payload.get("source_external_id"):
            return "missing_source_external_id"
        if recorded_at is None:
            return "missing_recorded_at"
        if recorded_at < oldest:
            return "timestamp_too_old"
        if recorded_at > newest:
            return "timestamp_in_future"
        if payload["value"] <= 0:
            return "invalid_value"
        return None
