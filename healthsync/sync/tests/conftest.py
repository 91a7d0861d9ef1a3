"""Shared fixtures for health sync engine tests."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import pytest

from healthsync.sync.backends.memory import InMemoryHealthBackend
from healthsync.sync.base import ActivityCategory, HealthSample, ProviderId
from healthsync.sync.config_loader import SyncConfig, load_sync_config
from healthsync.sync.orchestrator import SyncOrchestrator
from healthsync.sync.providers.mock import MockHealthConfig, MockHealthProvider

# Fixed "now" shared by providers, orchestrator and backend
NOW = datetime(2026, 2, 23, 12, 0, tzinfo=timezone.utc)
TEST_USER_ID = "6f1c2a9e-5d1b-4c8e-9a57-2b7d3e4f5a60"


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def backend(sync_config: SyncConfig) -> InMemoryHealthBackend:
    return InMemoryHealthBackend(user_id=TEST_USER_ID, clock=lambda: NOW, config=sync_config)


@pytest.fixture
def make_samples() -> Callable[..., list[HealthSample]]:
    """Build ``count`` distinct samples, one minute apart, ending just before NOW."""

    def _make(
        count: int,
        category: ActivityCategory = ActivityCategory.STEPS,
        prefix: str = "s",
        end: datetime = NOW,
    ) -> list[HealthSample]:
        return [
            HealthSample(
                id=f"{prefix}-{i}",
                category=category,
                value=100.0 + i,
                unit="steps" if category == ActivityCategory.STEPS else "",
                start_date=end - timedelta(minutes=i + 1),
                end_date=end - timedelta(minutes=i),
                source_name="iPhone",
                source_id="com.apple.health",
            )
            for i in range(count)
        ]

    return _make


@pytest.fixture
def make_provider(sync_config: SyncConfig) -> Callable[..., MockHealthProvider]:
    def _make(**overrides: object) -> MockHealthProvider:
        return MockHealthProvider(MockHealthConfig(**overrides), config=sync_config)

    return _make


@pytest.fixture
def make_orchestrator(
    sync_config: SyncConfig, backend: InMemoryHealthBackend
) -> Callable[..., SyncOrchestrator]:
    def _make(provider: MockHealthProvider, target=None) -> SyncOrchestrator:
        return SyncOrchestrator(
            provider, target or backend, config=sync_config, clock=lambda: NOW
        )

    return _make


@pytest.fixture
def connect(backend: InMemoryHealthBackend) -> Callable:
    """Register an active HealthKit connection directly in the backend store."""

    async def _connect(provider: ProviderId = ProviderId.HEALTHKIT) -> str:
        return await backend.connect_provider(provider, ["steps"])

    return _connect
