"""Tests for the session-scoped HealthService facade."""

from __future__ import annotations

import pytest

from healthsync.sync.base import ConnectionStatus, HealthPermission, ProviderId, SyncType
from healthsync.sync.service import build_health_service


@pytest.fixture
def make_service(backend, sync_config):
    def _make(provider):
        return build_health_service(provider, backend, sync_config)

    return _make


class TestHealthService:
    @pytest.mark.asyncio
    async def test_provider_passthrough(self, make_service, make_provider) -> None:
        service = make_service(make_provider(granted_permissions=[HealthPermission.STEPS]))

        assert service.provider_id == ProviderId.HEALTHKIT
        assert await service.is_available() is True
        status = await service.get_authorization_status()
        assert status.granted == (HealthPermission.STEPS,)

    @pytest.mark.asyncio
    async def test_one_orchestrator_per_session(self, make_service, make_provider) -> None:
        service = make_service(make_provider())
        assert service.connections._orchestrator is service.orchestrator

    @pytest.mark.asyncio
    async def test_connect_sync_history(self, make_service, make_provider, make_samples) -> None:
        service = make_service(make_provider(samples=make_samples(12)))

        await service.connect()
        await service.wait_for_background_tasks()
        result = await service.sync(SyncType.BACKGROUND)

        assert result.records_deduplicated == 12
        history = await service.get_sync_history(limit=10)
        assert [log.sync_type for log in history] == [SyncType.BACKGROUND, SyncType.INITIAL]
        state = await service.get_connection_status()
        assert state.status == ConnectionStatus.CONNECTED
        recent = await service.get_recent_activities(limit=3)
        assert len(recent) == 3
