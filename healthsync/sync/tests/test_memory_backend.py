"""Tests for the in-memory backend's server-side rules."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from healthsync.sync.backends.base import ManualActivity
from healthsync.sync.backends.memory import InMemoryHealthBackend, InMemoryStore
from healthsync.sync.base import (
    ActivityCategory,
    ActivityRecord,
    ProviderId,
    SyncStatus,
    SyncType,
)
from healthsync.sync.errors import (
    BackendError,
    ConnectionNotFoundError,
    DuplicateActivityError,
)


@pytest.fixture
def make_record(now):
    def _make(ext_id: str = "ext-1", value: int = 100, age: timedelta = timedelta(hours=1),
              challenge_ids: list[str] | None = None) -> ActivityRecord:
        return ActivityRecord(
            activity_type=ActivityCategory.STEPS,
            value=value,
            unit="steps",
            source=ProviderId.HEALTHKIT,
            source_external_id=ext_id,
            recorded_at=now - age,
            challenge_ids=list(challenge_ids or []),
        )

    return _make


class TestUpload:
    @pytest.mark.asyncio
    async def test_duplicates_absorbed(self, backend: InMemoryHealthBackend, make_record) -> None:
        first = await backend.upload_activity_batch([make_record("a"), make_record("b")])
        second = await backend.upload_activity_batch([make_record("a"), make_record("c")])

        assert (first.inserted, first.deduplicated) == (2, 0)
        assert (second.inserted, second.deduplicated) == (1, 1)
        assert second.total_processed == 2

    @pytest.mark.parametrize(
        "kwargs, error",
        [
            ({"age": timedelta(days=91)}, "timestamp_too_old"),
            ({"age": -timedelta(minutes=61)}, "timestamp_in_future"),
            ({"value": 0}, "invalid_value"),
            ({"ext_id": ""}, "missing_source_external_id"),
        ],
    )
    @pytest.mark.asyncio
    async def test_per_record_rejections(
        self, backend: InMemoryHealthBackend, make_record, kwargs: dict, error: str
    ) -> None:
        result = await backend.upload_activity_batch([make_record(**kwargs), make_record("ok")])

        assert result.inserted == 1
        assert [e.error for e in result.errors] == [error]
        assert result.total_processed == 2

    @pytest.mark.asyncio
    async def test_acceptance_window_edges(self, backend: InMemoryHealthBackend, make_record) -> None:
        result = await backend.upload_activity_batch([
            make_record("old-edge", age=timedelta(days=90)),
            make_record("future-edge", age=-timedelta(minutes=60)),
        ])
        assert result.inserted == 2
        assert result.errors == ()

    @pytest.mark.asyncio
    async def test_progress_credited_to_first_goal(
        self, backend: InMemoryHealthBackend, make_record, now
    ) -> None:
        goal_id = backend.store.add_goal(
            backend.user_id, ActivityCategory.STEPS, now - timedelta(days=1), now + timedelta(days=1)
        )
        await backend.upload_activity_batch([make_record("a", 250, challenge_ids=[goal_id])])
        await backend.upload_activity_batch([make_record("a", 250, challenge_ids=[goal_id])])

        assert backend.store.goal_progress(backend.user_id, goal_id) == 250


class TestConnectionsAndLogs:
    @pytest.mark.asyncio
    async def test_get_connection_missing(self, backend: InMemoryHealthBackend) -> None:
        with pytest.raises(ConnectionNotFoundError):
            await backend.get_connection(ProviderId.GOOGLEFIT)

    @pytest.mark.asyncio
    async def test_connections_are_per_user(self, sync_config) -> None:
        store = InMemoryStore()
        alice = InMemoryHealthBackend("alice", store=store, config=sync_config)
        bob = InMemoryHealthBackend("bob", store=store, config=sync_config)

        await alice.connect_provider(ProviderId.HEALTHKIT, ["steps"])

        with pytest.raises(ConnectionNotFoundError):
            await bob.get_connection(ProviderId.HEALTHKIT)

    @pytest.mark.asyncio
    async def test_failed_sync_keeps_last_sync_at(self, backend: InMemoryHealthBackend, connect) -> None:
        await connect()
        log_id = await backend.start_sync(ProviderId.HEALTHKIT, SyncType.MANUAL)

        await backend.complete_sync(log_id, SyncStatus.FAILED, error_message="boom")

        connection = await backend.get_connection(ProviderId.HEALTHKIT)
        assert connection.last_sync_at is None
        (log,) = await backend.get_sync_history(ProviderId.HEALTHKIT)
        assert log.status == SyncStatus.FAILED
        assert log.error_message == "boom"

    @pytest.mark.asyncio
    async def test_history_newest_first_and_limited(self, sync_config) -> None:
        ticks = iter(range(10))
        clock_backend = InMemoryHealthBackend(
            store=InMemoryStore(), config=sync_config,
            clock=lambda: datetime(2026, 2, 23, 12, next(ticks), tzinfo=timezone.utc),
        )
        ids = [await clock_backend.start_sync(ProviderId.HEALTHKIT, SyncType.BACKGROUND) for _ in range(3)]

        history = await clock_backend.get_sync_history(ProviderId.HEALTHKIT, limit=2)

        assert [log.id for log in history] == [ids[2], ids[1]]
        older = await clock_backend.get_sync_history(ProviderId.HEALTHKIT, limit=2, offset=2)
        assert [log.id for log in older] == [ids[0]]

    @pytest.mark.asyncio
    async def test_signed_out_calls_fail(self, sync_config) -> None:
        backend = InMemoryHealthBackend(user_id=None, config=sync_config)
        with pytest.raises(BackendError, match="authentication_required"):
            await backend.get_recent_activities()


class TestManualActivity:
    @pytest.fixture
    def goal_id(self, backend: InMemoryHealthBackend, now) -> str:
        return backend.store.add_goal(
            backend.user_id, ActivityCategory.STEPS,
            now - timedelta(days=1), now + timedelta(days=6), title="Step week",
        )

    @pytest.mark.asyncio
    async def test_logged_with_server_time(
        self, backend: InMemoryHealthBackend, goal_id: str, now
    ) -> None:
        await backend.log_activity(ManualActivity(goal_id, ActivityCategory.STEPS, 500, "evt-1"))

        (row,) = backend.store.activities
        assert row["recorded_at"] == now
        assert row["source"] == "manual"
        assert backend.store.goal_progress(backend.user_id, goal_id) == 500

    @pytest.mark.asyncio
    async def test_duplicate_event_id(self, backend: InMemoryHealthBackend, goal_id: str) -> None:
        activity = ManualActivity(goal_id, ActivityCategory.STEPS, 500, "evt-1")
        await backend.log_activity(activity)

        with pytest.raises(DuplicateActivityError):
            await backend.log_activity(activity)
        assert backend.store.goal_progress(backend.user_id, goal_id) == 500

    @pytest.mark.asyncio
    async def test_not_participant(self, backend: InMemoryHealthBackend) -> None:
        with pytest.raises(BackendError, match="not_participant") as exc_info:
            await backend.log_activity(
                ManualActivity("unknown", ActivityCategory.STEPS, 5, "evt-2")
            )
        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_goal_window_closed(self, backend: InMemoryHealthBackend, now) -> None:
        ended = backend.store.add_goal(
            backend.user_id, ActivityCategory.STEPS, now - timedelta(days=8), now - timedelta(days=1)
        )
        with pytest.raises(BackendError, match="challenge_not_active"):
            await backend.log_activity(ManualActivity(ended, ActivityCategory.STEPS, 5, "evt-3"))

    @pytest.mark.asyncio
    async def test_manual_rows_not_in_recent_activities(
        self, backend: InMemoryHealthBackend, goal_id: str, now
    ) -> None:
        await backend.log_activity(ManualActivity(goal_id, ActivityCategory.STEPS, 500, "evt-1"))
        await backend.upload_activity_batch([
            ActivityRecord(
                activity_type=ActivityCategory.STEPS, value=42, unit="steps",
                source=ProviderId.HEALTHKIT, source_external_id="hk",
                recorded_at=now - timedelta(hours=2), challenge_ids=[goal_id],
            )
        ])

        (recent,) = await backend.get_recent_activities()

        assert recent.value == 42
        assert recent.source == "healthkit"
        assert recent.challenge_title == "Step week"
