"""One sync pass, end to end.

    resolve range → open SyncLog → fetch samples → transform → assign goals
    → upload in batches → aggregate → close SyncLog

The SyncLog is written exactly twice: opened as ``syncing`` and closed with
a terminal status.  Anything that goes wrong between those two writes
before the uploads start closes the log as ``failed`` and re-raises the
original exception.  Upload batches never abort the pass; their failures are
collected and the log is closed as ``partial``.

Usage::

    orchestrator = SyncOrchestrator(provider, backend)
    result = await orchestrator.sync(SyncType.MANUAL)
    logger.info("Inserted %d records", result.records_inserted)
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Iterable, Iterator, Sequence
from datetime import datetime, timedelta
from typing import Any, TypeVar

from healthsync.sync.assigner import ChallengeAssigner
from healthsync.sync.backends.base import HealthBackend
from healthsync.sync.base import (
    ActivityCategory,
    ActivityRecord,
    DateRange,
    SyncErrorEntry,
    SyncResult,
    SyncStatus,
    SyncType,
    utc_now,
)
from healthsync.sync.config_loader import SyncConfig, get_sync_config
from healthsync.sync.errors import (
    BatchUploadError,
    InvalidDateRangeError,
    SyncLogCreationError,
)
from healthsync.sync.providers.base import HealthProvider
from healthsync.sync.transformer import SampleTransformer

logger = logging.getLogger("healthsync.sync.orchestrator")

T = TypeVar("T")

# Errors kept in the SyncLog metadata; the SyncResult always carries all of them.
_MAX_LOGGED_ERRORS = 50


def chunked(items: Sequence[T], size: int) -> Iterator[list[T]]:
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class SyncOrchestrator:
    """Runs sync passes for one provider against one backend session.

    Passes on the same instance are serialized: a background trigger that
    overlaps a manual sync waits for it to finish.  Overlap across processes
    or devices is absorbed by the backend's idempotency key alone.
    """

    def __init__(
        self,
        provider: HealthProvider,
        backend: HealthBackend,
        config: SyncConfig | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._provider = provider
        self._backend = backend
        self._config = config or get_sync_config()
        self._transformer = SampleTransformer(provider.provider, self._config)
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def resolve_date_range(
        self, sync_type: SyncType, lookback_days: int | None = None
    ) -> DateRange:
        """Range for a pass: an explicit lookback wins over the type default.

        The start is UTC midnight ``days`` ago, moved forward when needed so the
        span stays within the provider query cap.

        Raises:
            InvalidDateRangeError: For a ``custom`` pass without a lookback,
                or a lookback outside 1..max_range_days.
        """
        days = lookback_days if lookback_days is not None else self._config.lookback_for(sync_type)
        if days is None:
            raise InvalidDateRangeError(f"{sync_type.value} sync requires lookback_days")
        if days <= 0:
            raise InvalidDateRangeError(f"lookback_days must be positive, got {days}")
        max_days = self._config.query.max_range_days
        if days > max_days:
            raise InvalidDateRangeError(f"lookback_days cannot exceed {max_days}, got {days}")
        date_range = DateRange.lookback(days, now=self._clock())
        earliest = date_range.end - timedelta(days=max_days)
        if date_range.start < earliest:
            date_range = DateRange(start=earliest, end=date_range.end)
        return date_range

    async def sync(
        self,
        sync_type: SyncType = SyncType.MANUAL,
        lookback_days: int | None = None,
        categories: Iterable[ActivityCategory] | None = None,
    ) -> SyncResult:
        """Run one sync pass.

        Args:
            sync_type:     background / manual / initial / custom.
            lookback_days: Overrides the sync type's default lookback.
            categories:    Restrict the pass to these categories.

        Returns:
            The aggregated result.  ``success`` is False when any batch or
            record reported an error.

        Raises:
            InvalidDateRangeError: Bad lookback (no SyncLog is created).
            SyncLogCreationError:  The SyncLog could not be opened.
            ProviderFetchError:    Fetching failed; the SyncLog is ``failed``.
        """
        date_range = self.resolve_date_range(sync_type, lookback_days)
        async with self._lock:
            return await self._run(sync_type, date_range, categories)

    async def _run(
        self,
        sync_type: SyncType,
        date_range: DateRange,
        categories: Iterable[ActivityCategory] | None,
    ) -> SyncResult:
        started = time.monotonic()
        provider_id = self._provider.provider
        sync_log_id = await self._open_sync_log(sync_type)

        logger.info(
            "Sync %s started: %s %s, %s → %s",
            sync_log_id, provider_id.value, sync_type.value,
            date_range.start.isoformat(), date_range.end.isoformat(),
        )

        try:
            samples = await self._provider.query_samples(date_range, categories)
            records = self._transformer.transform_samples(samples)
            if records:
                goals = await self._backend.get_active_goals_for_sync()
                ChallengeAssigner(goals).assign(records)
        except Exception as exc:
            logger.warning("Sync %s failed before upload: %s", sync_log_id, exc)
            await self._close_failed(sync_log_id, exc, started)
            raise

        result = await self._upload(sync_log_id, records)
        result.duration_ms = self._elapsed_ms(started)
        batch_count = math.ceil(len(records) / self._config.upload.batch_size)
        await self._close(sync_log_id, result, date_range, batch_count)

        logger.info(
            "Sync %s %s: processed=%d inserted=%d deduplicated=%d errors=%d (%d ms)",
            sync_log_id, result.status.value, result.records_processed,
            result.records_inserted, result.records_deduplicated,
            len(result.errors), result.duration_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _open_sync_log(self, sync_type: SyncType) -> str:
        provider_id = self._provider.provider
        try:
            connection = await self._backend.get_connection(provider_id)
            if not connection.is_active:
                raise SyncLogCreationError(f"{provider_id.value} is not connected")
            return await self._backend.start_sync(provider_id, sync_type)
        except SyncLogCreationError:
            raise
        except Exception as exc:
            raise SyncLogCreationError(f"Failed to create sync log: {exc}") from exc

    async def _upload(self, sync_log_id: str, records: list[ActivityRecord]) -> SyncResult:
        result = SyncResult(success=True, sync_log_id=sync_log_id)
        batch_size = self._config.upload.batch_size

        for batch_index, batch in enumerate(chunked(records, batch_size)):
            try:
                batch_result = await self._backend.upload_activity_batch(batch)
            except Exception as exc:
                error = BatchUploadError(batch_index, len(batch), str(exc))
                logger.warning(
                    "Sync %s: batch %d (%d records) failed: %s",
                    sync_log_id, batch_index, len(batch), error,
                )
                result.records_processed += len(batch)
                result.errors.append(
                    SyncErrorEntry(
                        error=str(error) or type(exc).__name__,
                        batch_index=batch_index,
                        details=type(exc).__name__,
                        record_count=len(batch),
                    )
                )
                continue

            result.records_inserted += batch_result.inserted
            result.records_deduplicated += batch_result.deduplicated
            result.records_processed += batch_result.total_processed or (
                batch_result.inserted + batch_result.deduplicated + len(batch_result.errors)
            )
            for entry in batch_result.errors:
                result.errors.append(
                    SyncErrorEntry(
                        error=entry.error,
                        batch_index=batch_index,
                        source_external_id=entry.source_external_id,
                        details=entry.details,
                    )
                )
            if batch_result.errors:
                logger.warning(
                    "Sync %s: batch %d rejected %d records",
                    sync_log_id, batch_index, len(batch_result.errors),
                )

        result.success = not result.errors
        return result

    async def _close(
        self, sync_log_id: str, result: SyncResult, date_range: DateRange, batch_count: int
    ) -> None:
        metadata: dict[str, Any] = {
            "duration_ms": result.duration_ms,
            "batch_count": batch_count,
            "date_range": {
                "start": date_range.start.isoformat(),
                "end": date_range.end.isoformat(),
            },
        }
        error_message = None
        if result.errors:
            metadata["errors"] = [e.to_json() for e in result.errors[:_MAX_LOGGED_ERRORS]]
            error_message = (
                f"{sum(e.record_count for e in result.errors)} record(s) failed: "
                f"{result.errors[0].error}"
            )

        try:
            await self._backend.complete_sync(
                sync_log_id,
                result.status,
                records_processed=result.records_processed,
                records_inserted=result.records_inserted,
                records_deduplicated=result.records_deduplicated,
                error_message=error_message,
                metadata=metadata,
            )
        except Exception as exc:
            # Uploaded data is persisted and a repeat pass is a no-op for it.
            logger.error("Sync %s: failed to finalize sync log: %s", sync_log_id, exc)

    async def _close_failed(self, sync_log_id: str, error: Exception, started: float) -> None:
        try:
            await self._backend.complete_sync(
                sync_log_id,
                SyncStatus.FAILED,
                error_message=str(error) or type(error).__name__,
                metadata={"duration_ms": self._elapsed_ms(started)},
            )
        except Exception as exc:
            logger.error("Sync %s: failed to mark sync log failed: %s", sync_log_id, exc)

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
