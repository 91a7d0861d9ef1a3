"""Abstract health provider contract.

Every data source (HealthKit, Google Fit, the in-memory mock) subclasses
``HealthProvider`` and returns canonical ``HealthSample`` objects.  The
orchestrator and connection manager only ever talk to this interface.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Sequence

from healthsync.sync.base import (
    SYNCABLE_CATEGORIES,
    ActivityCategory,
    DateRange,
    HealthPermission,
    HealthSample,
    PermissionResult,
    ProviderId,
)
from healthsync.sync.config_loader import SyncConfig, get_sync_config
from healthsync.sync.errors import InvalidDateRangeError

logger = logging.getLogger("healthsync.sync.providers")


class HealthProvider(ABC):
    """Abstract base class for health data providers.

    Subclasses must implement:
        - is_available()
        - get_authorization_status()
        - request_authorization()
        - _fetch_samples()

    ``query_samples()`` is the public read path: it validates the range,
    calls ``_fetch_samples()``, then applies the shared post-processing
    (window filter, de-duplication by sample id, newest-first ordering).
    """

    #: Provider tag written to connections, logs and activity records.
    PROVIDER_ID: ProviderId

    #: Human-readable name for logging and UI.
    DISPLAY_NAME: str = "Unknown Provider"

    def __init__(self, config: SyncConfig | None = None) -> None:
        self._config = config or get_sync_config()

    @property
    def provider(self) -> ProviderId:
        return self.PROVIDER_ID

    @abstractmethod
    async def is_available(self) -> bool:
        """Return True only if the data source exists on this device."""

    @abstractmethod
    async def get_authorization_status(self) -> PermissionResult:
        """Report current grants without prompting the user."""

    @abstractmethod
    async def request_authorization(
        self, permissions: Sequence[HealthPermission]
    ) -> PermissionResult:
        """Ask for read access; may prompt the user.

        Never raises on partial or total denial: the denied permissions are
        reported in the result instead.
        """

    @abstractmethod
    async def _fetch_samples(
        self, date_range: DateRange, categories: Sequence[ActivityCategory]
    ) -> list[HealthSample]:
        """Read raw samples from the underlying store.

        Raises:
            ProviderFetchError: On any I/O failure.
        """

    async def query_samples(
        self,
        date_range: DateRange,
        categories: Iterable[ActivityCategory] | None = None,
    ) -> list[HealthSample]:
        """Return all samples that start within ``[start, end)``.

        Args:
            date_range: Query window.
            categories: Categories to read; defaults to every syncable one.

        Returns:
            Samples de-duplicated by provider id, newest first.  May be empty.

        Raises:
            InvalidDateRangeError: If the range is inverted or too long.
            ProviderFetchError:    On I/O failure.
        """
        self._validate_date_range(date_range)
        wanted = tuple(categories) if categories is not None else SYNCABLE_CATEGORIES
        samples = await self._fetch_samples(date_range, wanted)
        in_window = [
            s
            for s in samples
            if s.category in wanted and date_range.contains(s.start_date)
        ]
        result = self._sort_newest_first(self._deduplicate(in_window))
        logger.debug(
            "%s: %d samples in %s – %s", self.DISPLAY_NAME, len(result),
            date_range.start.isoformat(), date_range.end.isoformat(),
        )
        return result

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    def _validate_date_range(self, date_range: DateRange) -> None:
        if date_range.start > date_range.end:
            raise InvalidDateRangeError("Start date must be before end date")
        max_days = self._config.query.max_range_days
        if date_range.days > max_days:
            raise InvalidDateRangeError(f"Date range cannot exceed {max_days} days")

    @staticmethod
    def _deduplicate(samples: list[HealthSample]) -> list[HealthSample]:
        seen: set[str] = set()
        unique: list[HealthSample] = []
        for sample in samples:
            if sample.id in seen:
                continue
            seen.add(sample.id)
            unique.append(sample)
        return unique

    @staticmethod
    def _sort_newest_first(samples: list[HealthSample]) -> list[HealthSample]:
        return sorted(samples, key=lambda s: s.start_date, reverse=True)

    @staticmethod
    def _safe_float(value: object) -> float | None:
        """Safely coerce a value to float, returning None on failure."""
        if value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None
