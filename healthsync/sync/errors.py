"""Error taxonomy for the health sync engine.

Errors raised before a sync log exists bubble straight to the caller.  Errors
raised after a sync log is open are recorded in that log's terminal state and
then re-raised.  Batch-level failures are never raised out of a sync pass;
they are captured as ``BatchUploadError`` entries in ``SyncResult.errors``.

Every error carries a ``retryable`` flag so callers can decide between
"try again" and "needs user action" without matching on types.
"""

from __future__ import annotations


class HealthSyncError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False


class ProviderUnavailableError(HealthSyncError):
    """The device has no usable health data source for this provider."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"{provider} is not available on this device")
        self.provider = provider


class NoPermissionsGrantedError(HealthSyncError):
    """The user declined every requested permission."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"No health permissions were granted for {provider}")
        self.provider = provider


class ProviderFetchError(HealthSyncError):
    """Reading samples from the provider failed (transient I/O)."""

    retryable = True

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(message)
        self.provider = provider


class InvalidDateRangeError(HealthSyncError, ValueError):
    """A sample query was given an inverted or oversized date range."""


class SyncLogCreationError(HealthSyncError):
    """The sync log could not be opened, so no work was attempted."""

    retryable = True


class BatchUploadError(HealthSyncError):
    """One upload batch failed at the transport level.

    Captured into the aggregated error list; never aborts the pass.
    """

    retryable = True

    def __init__(self, batch_index: int, record_count: int, message: str) -> None:
        super().__init__(message)
        self.batch_index = batch_index
        self.record_count = record_count


class DisconnectError(HealthSyncError):
    """The backend rejected deactivating the connection.

    ``str(error)`` is the backend's own message, unchanged.
    """


class ConnectionNotFoundError(HealthSyncError):
    """No connection record exists for this user and provider."""

    def __init__(self, provider: str) -> None:
        super().__init__(f"No health connection found for {provider}")
        self.provider = provider


class BackendError(HealthSyncError):
    """A backend call failed (transport error or RPC exception)."""

    retryable = True

    def __init__(
        self,
        operation: str,
        message: str,
        code: str | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.code = code
        if retryable is not None:
            self.retryable = retryable


class DuplicateActivityError(BackendError):
    """A manual activity with the same ``client_event_id`` already exists."""

    retryable = False

    def __init__(self, client_event_id: str) -> None:
        super().__init__(
            "log_activity",
            f"Activity {client_event_id} was already logged",
            code="23505",
        )
        self.client_event_id = client_event_id


class ConfigValidationError(HealthSyncError, ValueError):
    """Raised when sync_config.yaml fails validation."""
