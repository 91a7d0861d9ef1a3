"""Connection lifecycle: connect, disconnect, status.

Connection state is never cached here.  ``get_connection_status()`` derives
the answer from the provider and the backend on every call.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence

from healthsync.sync.backends.base import HealthBackend
from healthsync.sync.base import (
    ConnectionState,
    ConnectionStatus,
    HealthConnection,
    HealthPermission,
    SyncType,
)
from healthsync.sync.config_loader import SyncConfig, get_sync_config
from healthsync.sync.errors import (
    ConnectionNotFoundError,
    DisconnectError,
    NoPermissionsGrantedError,
    ProviderUnavailableError,
)
from healthsync.sync.orchestrator import SyncOrchestrator
from healthsync.sync.providers.base import HealthProvider

logger = logging.getLogger("healthsync.sync.connection")


class ConnectionManager:
    """Owns the provider connection record for one session.

    ``connect()`` kicks off an ``initial`` sync as a detached task.  The task
    outlives the call; its failure is logged and never reaches the caller.
    Use ``wait_for_background_tasks()`` to await outstanding tasks.
    """

    def __init__(
        self,
        provider: HealthProvider,
        backend: HealthBackend,
        orchestrator: SyncOrchestrator,
        config: SyncConfig | None = None,
    ) -> None:
        self._provider = provider
        self._backend = backend
        self._orchestrator = orchestrator
        self._config = config or get_sync_config()
        self._background_tasks: set[asyncio.Task] = set()

    async def get_connection_status(self) -> ConnectionState:
        disconnected = ConnectionState(status=ConnectionStatus.DISCONNECTED)

        if not await self._backend.current_user_id():
            return disconnected
        if not await self._provider.is_available():
            return disconnected

        try:
            connection = await self._backend.get_connection(self._provider.provider)
        except ConnectionNotFoundError:
            return disconnected
        if not connection.is_active:
            return ConnectionState(
                status=ConnectionStatus.DISCONNECTED,
                connection=connection,
                last_sync=connection.last_sync_at,
            )

        in_progress = await self._backend.find_in_progress_sync(self._provider.provider)
        status = ConnectionStatus.SYNCING if in_progress else ConnectionStatus.CONNECTED
        return ConnectionState(
            status=status, connection=connection, last_sync=connection.last_sync_at
        )

    async def connect(
        self, permissions: Sequence[HealthPermission] | None = None
    ) -> HealthConnection:
        """Authorize, register the connection and start the initial sync.

        Args:
            permissions: Permissions to request; defaults to the configured set.

        Raises:
            ProviderUnavailableError:  The provider is missing on this device.
            NoPermissionsGrantedError: The user denied every permission.
            BackendError:              Registering the connection failed.
        """
        provider_id = self._provider.provider.value
        if not await self._provider.is_available():
            raise ProviderUnavailableError(provider_id)

        requested = list(permissions) if permissions else list(self._config.connect_permissions)
        result = await self._provider.request_authorization(requested)
        if not result.granted:
            raise NoPermissionsGrantedError(provider_id)

        await self._backend.connect_provider(
            self._provider.provider, [p.value for p in result.granted]
        )
        connection = await self._backend.get_connection(self._provider.provider)
        logger.info(
            "Connected %s (%d permissions granted, %d denied)",
            provider_id, len(result.granted), len(result.denied),
        )

        self._start_initial_sync()
        return connection

    async def disconnect(self) -> None:
        """Deactivate the connection.

        Raises:
            DisconnectError: With the backend's message, unchanged.
        """
        try:
            await self._backend.disconnect_provider(self._provider.provider)
        except Exception as exc:
            raise DisconnectError(str(exc)) from exc
        logger.info("Disconnected %s", self._provider.provider.value)

    @property
    def has_background_tasks(self) -> bool:
        return bool(self._background_tasks)

    async def wait_for_background_tasks(self) -> None:
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks, return_exceptions=True)

    def _start_initial_sync(self) -> None:
        task = asyncio.create_task(self._orchestrator.sync(SyncType.INITIAL))
        self._background_tasks.add(task)
        task.add_done_callback(self._on_initial_sync_done)

    def _on_initial_sync_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            logger.warning("Initial sync for %s was cancelled", self._provider.provider.value)
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(
                "Initial sync for %s failed: %s", self._provider.provider.value, exc
            )
