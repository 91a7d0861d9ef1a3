"""Backend boundary for the sync engine.

The backend owns every persistent row (connections, sync logs, activity
logs, goals).  All identity comes from the backend session: methods never
take a user id, they act on behalf of ``current_user_id()``.

Implementations raise ``BackendError`` for transport or RPC failures, with
two exceptions spelled out on the methods: ``get_connection`` raises
``ConnectionNotFoundError`` and ``log_activity`` raises
``DuplicateActivityError``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from healthsync.sync.base import (
    ActivityCategory,
    ActivityRecord,
    BatchUploadResult,
    Goal,
    HealthConnection,
    ProviderId,
    SyncLog,
    SyncStatus,
    SyncType,
    parse_timestamp,
)


@dataclass(frozen=True)
class ManualActivity:
    """One user-entered activity for ``log_activity``.

    ``client_event_id`` is the idempotency key and must be generated once per
    user action, before the first attempt.
    """

    challenge_id: str
    activity_type: ActivityCategory
    value: int
    client_event_id: str
    unit: str | None = None


@dataclass(frozen=True)
class RecentActivity:
    """A provider-sourced activity row as shown in history views."""

    id: str
    activity_type: ActivityCategory
    value: int
    unit: str
    source: str
    recorded_at: datetime
    challenge_id: str | None = None
    challenge_title: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "RecentActivity":
        return cls(
            id=str(row["id"]),
            activity_type=ActivityCategory(row["activity_type"]),
            value=int(row["value"]),
            unit=str(row.get("unit") or ""),
            source=str(row["source"]),
            recorded_at=parse_timestamp(row["recorded_at"]),
            challenge_id=str(row["challenge_id"]) if row.get("challenge_id") else None,
            challenge_title=row.get("challenge_title"),
        )


class HealthBackend(ABC):
    """Abstract interface to the remote store."""

    @abstractmethod
    async def current_user_id(self) -> str | None:
        """Return the authenticated user id, or None when signed out."""

    # ── Connections ──

    @abstractmethod
    async def connect_provider(
        self, provider: ProviderId, permissions: Sequence[str]
    ) -> str:
        """Upsert and activate the connection; return its id."""

    @abstractmethod
    async def get_connection(self, provider: ProviderId) -> HealthConnection:
        """Return the connection record, active or not.

        Raises:
            ConnectionNotFoundError: If the user never connected this provider.
        """

    @abstractmethod
    async def disconnect_provider(self, provider: ProviderId) -> None:
        """Clear the active flag and stamp ``disconnected_at``."""

    # ── Sync logs ──

    @abstractmethod
    async def find_in_progress_sync(self, provider: ProviderId) -> SyncLog | None:
        """Return a non-terminal sync log for this provider, if any."""

    @abstractmethod
    async def start_sync(self, provider: ProviderId, sync_type: SyncType) -> str:
        """Open a sync log in ``syncing`` state and return its id."""

    @abstractmethod
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
        """Write the terminal state of a sync log.

        A ``completed`` status also stamps the active connection's
        ``last_sync_at``.
        """

    @abstractmethod
    async def get_sync_history(
        self, provider: ProviderId, limit: int = 20, offset: int = 0
    ) -> list[SyncLog]:
        """Most recent sync logs first."""

    # ── Activities / goals ──

    @abstractmethod
    async def upload_activity_batch(
        self, records: Sequence[ActivityRecord]
    ) -> BatchUploadResult:
        """Idempotently insert a batch.

        Per-record rejections come back in ``errors``; only transport-level
        failures raise.
        """

    @abstractmethod
    async def get_active_goals_for_sync(self) -> list[Goal]:
        """Active goals the user participates in, soonest-ending first."""

    @abstractmethod
    async def get_recent_activities(
        self, limit: int = 50, offset: int = 0
    ) -> list[RecentActivity]:
        """Provider-sourced activities, newest ``recorded_at`` first."""

    @abstractmethod
    async def log_activity(self, activity: ManualActivity) -> None:
        """Log one manual activity against a goal.

        Raises:
            DuplicateActivityError: If ``client_event_id`` was already logged.
        """
