"""Deterministic in-memory provider for tests and local development.

Supports an injectable sample set, configurable availability, authorization
denial, fetch failure and latency.  When no samples are injected it
generates one sample per category per day with values derived from the
sample id, so repeated queries return identical data.
"""

from __future__ import annotations

import asyncio
import logging
import zlib
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta, timezone

from healthsync.sync.base import (
    ActivityCategory,
    DateRange,
    HealthPermission,
    HealthSample,
    PermissionResult,
    ProviderId,
)
from healthsync.sync.config_loader import SyncConfig
from healthsync.sync.errors import ProviderFetchError
from healthsync.sync.providers.base import HealthProvider

logger = logging.getLogger("healthsync.sync.providers.mock")

_VALUE_RANGES: dict[ActivityCategory, tuple[int, int]] = {
    ActivityCategory.STEPS: (2000, 15000),
    ActivityCategory.ACTIVE_MINUTES: (10, 120),
    ActivityCategory.WORKOUTS: (1, 3),
    ActivityCategory.DISTANCE: (1000, 10000),
    ActivityCategory.CALORIES: (100, 800),
}

_DEFAULT_GRANTS = (
    HealthPermission.STEPS,
    HealthPermission.CALORIES,
    HealthPermission.ACTIVE_MINUTES,
    HealthPermission.DISTANCE,
)


@dataclass
class MockHealthConfig:
    """Behaviour switches for ``MockHealthProvider``.

    Attributes:
        available:           Value returned by ``is_available()``.
        granted_permissions: Permissions already granted before any request.
        authorization_fails: Deny every permission on request.
        latency_s:           Artificial delay before each call (0 = none).
        samples:             Fixed sample set; None generates samples.
        fetch_fails:         Raise ProviderFetchError from ``query_samples``.
        error_message:       Message used for the fetch failure.
        provider:            Provider tag the mock reports.
    """

    available: bool = True
    granted_permissions: list[HealthPermission] = field(
        default_factory=lambda: list(_DEFAULT_GRANTS)
    )
    authorization_fails: bool = False
    latency_s: float = 0.0
    samples: list[HealthSample] | None = None
    fetch_fails: bool = False
    error_message: str = "Mock error"
    provider: ProviderId = ProviderId.HEALTHKIT


class MockHealthProvider(HealthProvider):
    """Deterministic test double for ``HealthProvider``."""

    DISPLAY_NAME = "Mock Health"

    def __init__(
        self,
        mock_config: MockHealthConfig | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        super().__init__(config)
        self.mock_config = mock_config or MockHealthConfig()
        self.query_calls: list[DateRange] = []

    @property
    def provider(self) -> ProviderId:
        return self.mock_config.provider

    def set_config(self, **changes: object) -> None:
        """Change behaviour mid-test, e.g. ``provider.set_config(fetch_fails=True)``."""
        self.mock_config = replace(self.mock_config, **changes)

    async def is_available(self) -> bool:
        await self._delay()
        return self.mock_config.available

    async def get_authorization_status(self) -> PermissionResult:
        await self._delay()
        granted = tuple(self.mock_config.granted_permissions)
        return PermissionResult(
            granted=granted,
            not_determined=tuple(p for p in HealthPermission if p not in granted),
        )

    async def request_authorization(
        self, permissions: Sequence[HealthPermission]
    ) -> PermissionResult:
        await self._delay()
        requested = tuple(permissions)
        if self.mock_config.authorization_fails:
            return PermissionResult(denied=requested)

        merged = list(self.mock_config.granted_permissions)
        merged.extend(p for p in requested if p not in merged)
        self.mock_config.granted_permissions = merged
        return PermissionResult(granted=requested)

    async def _fetch_samples(
        self, date_range: DateRange, categories: Sequence[ActivityCategory]
    ) -> list[HealthSample]:
        self.query_calls.append(date_range)
        await self._delay()

        if self.mock_config.fetch_fails:
            raise ProviderFetchError(self.provider.value, self.mock_config.error_message)

        if self.mock_config.samples is not None:
            return list(self.mock_config.samples)
        return self._generate_samples(date_range, categories)

    async def _delay(self) -> None:
        if self.mock_config.latency_s > 0:
            await asyncio.sleep(self.mock_config.latency_s)

    def _generate_samples(
        self, date_range: DateRange, categories: Sequence[ActivityCategory]
    ) -> list[HealthSample]:
        samples: list[HealthSample] = []
        day = date_range.start.date()
        while day <= date_range.end.date():
            for category in categories:
                if category not in _VALUE_RANGES:
                    continue
                sample_id = f"mock-{category.value}-{day.isoformat()}"
                low, high = _VALUE_RANGES[category]
                value = low + zlib.crc32(sample_id.encode()) % (high - low + 1)
                start = datetime.combine(day, time(8, 0), tzinfo=timezone.utc)
                samples.append(
                    HealthSample(
                        id=sample_id,
                        category=category,
                        value=float(value),
                        unit=self._config.default_unit(category),
                        start_date=start,
                        end_date=start + timedelta(hours=12),
                        source_name="MockHealth",
                        source_id="com.mock.health",
                    )
                )
            day += timedelta(days=1)
        return samples


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def create_fully_granted_mock_provider() -> MockHealthProvider:
    return MockHealthProvider(
        MockHealthConfig(
            granted_permissions=[
                HealthPermission.STEPS,
                HealthPermission.ACTIVE_MINUTES,
                HealthPermission.WORKOUTS,
                HealthPermission.DISTANCE,
                HealthPermission.CALORIES,
            ]
        )
    )


def create_failing_mock_provider(error_message: str = "Mock error") -> MockHealthProvider:
    return MockHealthProvider(MockHealthConfig(fetch_fails=True, error_message=error_message))


def create_mock_provider_with_samples(samples: list[HealthSample]) -> MockHealthProvider:
    return MockHealthProvider(MockHealthConfig(samples=list(samples)))
