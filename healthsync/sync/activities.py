"""Manual activity logging with a caller-owned idempotency key."""

from __future__ import annotations

import asyncio
import logging

from healthsync.sync.backends.base import HealthBackend, ManualActivity
from healthsync.sync.config_loader import SyncConfig, get_sync_config
from healthsync.sync.errors import BackendError, DuplicateActivityError

logger = logging.getLogger("healthsync.sync.activities")


class ActivityLogger:
    """Logs user-entered activity against a goal.

    The backend rejects a second activity with the same ``client_event_id``;
    that rejection means an earlier attempt already landed, so it is
    reported as success.
    """

    def __init__(self, backend: HealthBackend, config: SyncConfig | None = None) -> None:
        self._backend = backend
        self._retry = (config or get_sync_config()).retry

    async def log_activity(self, activity: ManualActivity) -> bool:
        """Log once.

        Returns:
            True if this call inserted the activity, False if it was already
            logged under the same ``client_event_id``.
        """
        try:
            await self._backend.log_activity(activity)
        except DuplicateActivityError:
            logger.info("Activity %s already logged", activity.client_event_id)
            return False
        return True

    async def log_activity_with_retry(
        self,
        activity: ManualActivity,
        max_attempts: int | None = None,
        base_delay_s: float | None = None,
    ) -> bool:
        """Log with exponential backoff on retryable backend errors.

        ``max_attempts`` and ``base_delay_s`` default to the ``retry`` section
        of the sync config.

        Every attempt sends the same ``client_event_id``, so a retry after a
        lost response cannot double-count.

        Raises:
            BackendError: The last error, once attempts are exhausted or the
                error is not retryable.
        """
        if max_attempts is None:
            max_attempts = self._retry.max_attempts
        if base_delay_s is None:
            base_delay_s = self._retry.base_delay_s
        attempt = 1
        while True:
            try:
                return await self.log_activity(activity)
            except BackendError as exc:
                if not exc.retryable or attempt >= max_attempts:
                    raise
                delay = base_delay_s * (2 ** (attempt - 1))
                logger.warning(
                    "log_activity attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt, max_attempts, exc, delay,
                )
                await asyncio.sleep(delay)
                attempt += 1
