"""``HealthBackend`` over the Supabase Postgres RPC functions.

Each method is one round trip in its own transaction, executed as the
session user (see ``healthsync.services.supabase.get_connection``).

RPC mapping:
    connect_provider          → public.connect_health_provider(provider, permissions)
    get_connection            → public.get_health_connection(provider)
    disconnect_provider       → public.disconnect_health_provider(provider)
    start_sync                → public.start_health_sync(provider, sync_type)
    complete_sync             → public.complete_health_sync(log_id, status, …)
    upload_activity_batch     → public.log_health_activity(activities jsonb)
    get_active_goals_for_sync → public.get_challenges_for_health_sync()
    get_recent_activities     → public.get_recent_health_activities(limit, offset)
    log_activity              → public.log_activity(challenge, type, value, 'manual', event id)
    find_in_progress_sync /
    get_sync_history          → public.health_sync_logs (RLS-scoped select)
"""

from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from typing import Any

import asyncpg

from healthsync.services import supabase as db
from healthsync.sync.backends.base import HealthBackend, ManualActivity, RecentActivity
from healthsync.sync.base import (
    ActivityRecord,
    BatchUploadResult,
    Goal,
    HealthConnection,
    ProviderId,
    SyncLog,
    SyncStatus,
    SyncType,
)
from healthsync.sync.errors import (
    BackendError,
    ConnectionNotFoundError,
    DuplicateActivityError,
)

logger = logging.getLogger("healthsync.sync.backends.supabase")

# health_sync_logs.status predates the engine's vocabulary.
_STATUS_TO_DB = {SyncStatus.SYNCING: "in_progress", SyncStatus.PENDING: "in_progress"}
_STATUS_FROM_DB = {"in_progress": SyncStatus.SYNCING.value}

# Connection exceptions, transaction rollback, insufficient resources, operator intervention.
_TRANSIENT_SQLSTATE_CLASSES = {"08", "40", "53", "57"}

_SYNC_LOG_COLUMNS = (
    "id, provider, sync_type, status, started_at, completed_at, records_processed, "
    "records_inserted, records_deduplicated, error_message, metadata"
)


def _jsonb(value: Any) -> Any:
    """asyncpg returns json/jsonb as text unless a codec is registered."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def _sync_log(record: asyncpg.Record) -> SyncLog:
    row = dict(record)
    row["status"] = _STATUS_FROM_DB.get(row["status"], row["status"])
    row["metadata"] = _jsonb(row.get("metadata"))
    return SyncLog.from_row(row)


class SupabaseBackend(HealthBackend):
    """Supabase-backed store for one authenticated session.

    Args:
        user_id: Supabase auth user id (JWT ``sub``), or None if signed out.
        pool:    Optional asyncpg pool; defaults to the app-wide pool.
    """

    def __init__(self, user_id: str | None, pool: asyncpg.Pool | None = None) -> None:
        self._user_id = user_id
        self._pool = pool

    async def current_user_id(self) -> str | None:
        return self._user_id

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect_provider(
        self, provider: ProviderId, permissions: Sequence[str]
    ) -> str:
        connection_id = await self._call(
            "connect_provider",
            "fetchval",
            "SELECT public.connect_health_provider($1, $2::jsonb)",
            provider.value,
            json.dumps(list(permissions)),
        )
        return str(connection_id)

    async def get_connection(self, provider: ProviderId) -> HealthConnection:
        record = await self._call(
            "get_connection",
            "fetchrow",
            "SELECT * FROM public.get_health_connection($1)",
            provider.value,
        )
        if record is None:
            raise ConnectionNotFoundError(provider.value)
        row = dict(record)
        row["permissions_granted"] = _jsonb(row.get("permissions_granted"))
        row.setdefault("user_id", self._user_id)
        return HealthConnection.from_row(row)

    async def disconnect_provider(self, provider: ProviderId) -> None:
        await self._call(
            "disconnect_provider",
            "fetchval",
            "SELECT public.disconnect_health_provider($1)",
            provider.value,
        )

    # ------------------------------------------------------------------
    # Sync logs
    # ------------------------------------------------------------------

    async def find_in_progress_sync(self, provider: ProviderId) -> SyncLog | None:
        record = await self._call(
            "find_in_progress_sync",
            "fetchrow",
            f"SELECT {_SYNC_LOG_COLUMNS} FROM public.health_sync_logs "
            "WHERE provider = $1 AND status = 'in_progress' "
            "ORDER BY started_at DESC LIMIT 1",
            provider.value,
        )
        return _sync_log(record) if record else None

    async def start_sync(self, provider: ProviderId, sync_type: SyncType) -> str:
        log_id = await self._call(
            "start_sync",
            "fetchval",
            "SELECT public.start_health_sync($1, $2)",
            provider.value,
            sync_type.value,
        )
        if log_id is None:
            raise BackendError("start_sync", "start_health_sync returned no id")
        return str(log_id)

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
        await self._call(
            "complete_sync",
            "fetchval",
            "SELECT public.complete_health_sync($1::uuid, $2, $3, $4, $5, $6, $7::jsonb)",
            sync_log_id,
            _STATUS_TO_DB.get(status, status.value),
            records_processed,
            records_inserted,
            records_deduplicated,
            error_message,
            json.dumps(metadata or {}),
        )

    async def get_sync_history(
        self, provider: ProviderId, limit: int = 20, offset: int = 0
    ) -> list[SyncLog]:
        records = await self._call(
            "get_sync_history",
            "fetch",
            f"SELECT {_SYNC_LOG_COLUMNS} FROM public.health_sync_logs "
            "WHERE provider = $1 ORDER BY started_at DESC LIMIT $2 OFFSET $3",
            provider.value,
            limit,
            offset,
        )
        return [_sync_log(r) for r in records]

    # ------------------------------------------------------------------
    # Activities / goals
    # ------------------------------------------------------------------

    async def upload_activity_batch(
        self, records: Sequence[ActivityRecord]
    ) -> BatchUploadResult:
        payload = json.dumps([r.to_payload() for r in records])
        result = await self._call(
            "upload_activity_batch",
            "fetchval",
            "SELECT public.log_health_activity($1::jsonb)",
            payload,
        )
        return BatchUploadResult.from_json(_jsonb(result) or {})

    async def get_active_goals_for_sync(self) -> list[Goal]:
        records = await self._call(
            "get_active_goals_for_sync",
            "fetch",
            "SELECT * FROM public.get_challenges_for_health_sync()",
        )
        return [Goal.from_row(dict(r)) for r in records]

    async def get_recent_activities(
        self, limit: int = 50, offset: int = 0
    ) -> list[RecentActivity]:
        records = await self._call(
            "get_recent_activities",
            "fetch",
            "SELECT * FROM public.get_recent_health_activities($1, $2)",
            limit,
            offset,
        )
        return [RecentActivity.from_row(dict(r)) for r in records]

    async def log_activity(self, activity: ManualActivity) -> None:
        try:
            await self._call(
                "log_activity",
                "fetchval",
                "SELECT public.log_activity($1::uuid, $2, $3, 'manual', $4::uuid)",
                activity.challenge_id,
                activity.activity_type.value,
                activity.value,
                activity.client_event_id,
            )
        except BackendError as exc:
            if exc.code == asyncpg.UniqueViolationError.sqlstate:
                raise DuplicateActivityError(activity.client_event_id) from exc
            raise

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, operation: str, method: str, query: str, *args: Any) -> Any:
        """Run one query as the session user, translating driver errors."""
        if not self._user_id:
            raise BackendError(operation, "authentication_required", retryable=False)
        try:
            async with db.get_connection(user_id=self._user_id, pool=self._pool) as conn:
                return await getattr(conn, method)(query, *args)
        except asyncpg.PostgresError as exc:
            logger.warning("%s failed: %s", operation, exc)
            raise BackendError(
                operation,
                str(exc),
                code=exc.sqlstate,
                retryable=(exc.sqlstate or "")[:2] in _TRANSIENT_SQLSTATE_CLASSES,
            ) from exc
        except (asyncpg.InterfaceError, OSError, TimeoutError) as exc:
            logger.warning("%s transport error: %s", operation, exc)
            raise BackendError(operation, str(exc) or type(exc).__name__) from exc
