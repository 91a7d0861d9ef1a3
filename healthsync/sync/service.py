"""Session-scoped facade over the sync engine.

One ``HealthService`` per authenticated session.  It is built explicitly by
``build_health_service()`` (or the FastAPI dependency) and holds exactly one
provider, one backend and one orchestrator, so every sync for that session
goes through the same lock.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from healthsync.sync.activities import ActivityLogger
from healthsync.sync.backends.base import HealthBackend, ManualActivity, RecentActivity
from healthsync.sync.base import (
    ActivityCategory,
    ConnectionState,
    HealthConnection,
    HealthPermission,
    PermissionResult,
    ProviderId,
    SyncLog,
    SyncResult,
    SyncType,
)
from healthsync.sync.config_loader import SyncConfig, get_sync_config
from healthsync.sync.connection import ConnectionManager
from healthsync.sync.orchestrator import SyncOrchestrator
from healthsync.sync.providers.base import HealthProvider

logger = logging.getLogger("healthsync.sync.service")


class HealthService:
    def __init__(
        self,
        provider: HealthProvider,
        backend: HealthBackend,
        config: SyncConfig | None = None,
    ) -> None:
        self._config = config or get_sync_config()
        self.provider = provider
        self.backend = backend
        self.orchestrator = SyncOrchestrator(provider, backend, self._config)
        self.connections = ConnectionManager(
            provider, backend, self.orchestrator, self._config
        )
        self.activities = ActivityLogger(backend, self._config)

    @property
    def provider_id(self) -> ProviderId:
        return self.provider.provider

    @property
    def is_idle(self) -> bool:
        """No pass is running or queued and no initial sync is pending."""
        return not (self.orchestrator.is_running or self.connections.has_background_tasks)

    async def is_available(self) -> bool:
        return await self.provider.is_available()

    async def get_authorization_status(self) -> PermissionResult:
        return await self.provider.get_authorization_status()

    async def get_connection_status(self) -> ConnectionState:
        return await self.connections.get_connection_status()

    async def connect(
        self, permissions: Sequence[HealthPermission] | None = None
    ) -> HealthConnection:
        return await self.connections.connect(permissions)

    async def disconnect(self) -> None:
        await self.connections.disconnect()

    async def sync(
        self,
        sync_type: SyncType = SyncType.MANUAL,
        lookback_days: int | None = None,
        categories: Iterable[ActivityCategory] | None = None,
    ) -> SyncResult:
        return await self.orchestrator.sync(sync_type, lookback_days, categories)

    async def get_sync_history(self, limit: int = 20, offset: int = 0) -> list[SyncLog]:
        return await self.backend.get_sync_history(self.provider_id, limit, offset)

    async def get_recent_activities(
        self, limit: int = 50, offset: int = 0
    ) -> list[RecentActivity]:
        return await self.backend.get_recent_activities(limit, offset)

    async def log_activity(self, activity: ManualActivity) -> bool:
        return await self.activities.log_activity_with_retry(activity)

    async def wait_for_background_tasks(self) -> None:
        await self.connections.wait_for_background_tasks()


def build_health_service(
    provider: HealthProvider,
    backend: HealthBackend,
    config: SyncConfig | None = None,
) -> HealthService:
    """Composition root for one session."""
    service = HealthService(provider, backend, config)
    logger.debug("Built health service for %s", service.provider_id.value)
    return service
