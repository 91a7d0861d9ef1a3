"""Health sync endpoints: connection lifecycle, sync runs, history, manual logging.

The routes only forward to the session's ``HealthService``; engine errors
are translated to HTTP status codes here.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException

from healthsync.dependencies import HealthServiceDep
from healthsync.models.base import ErrorDetail, PaginationParams
from healthsync.models.health_sync import (
    ConnectionRead,
    ConnectionStatusRead,
    ConnectRequest,
    ManualActivityCreate,
    ManualActivityResult,
    RecentActivityRead,
    SyncLogRead,
    SyncRequest,
    SyncResultRead,
)
from healthsync.sync.backends.base import ManualActivity
from healthsync.sync.errors import (
    BackendError,
    ConnectionNotFoundError,
    DisconnectError,
    HealthSyncError,
    InvalidDateRangeError,
    NoPermissionsGrantedError,
    ProviderFetchError,
    ProviderUnavailableError,
    SyncLogCreationError,
)

router = APIRouter(prefix="/health-sync", tags=["health-sync"])
logger = logging.getLogger("healthsync.routers.health_sync")

_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    409: {"model": ErrorDetail},
    422: {"model": ErrorDetail},
    502: {"model": ErrorDetail},
    503: {"model": ErrorDetail},
}


def _to_http(exc: HealthSyncError) -> HTTPException:
    if isinstance(exc, (ProviderUnavailableError, NoPermissionsGrantedError)):
        status = 409
    elif isinstance(exc, ConnectionNotFoundError):
        status = 404
    elif isinstance(exc, InvalidDateRangeError):
        status = 422
    elif isinstance(exc, DisconnectError):
        status = 502
    elif isinstance(exc, BackendError) and not exc.retryable:
        status = 422
    elif isinstance(exc, (ProviderFetchError, SyncLogCreationError, BackendError)):
        status = 503
    else:
        status = 500
    if status >= 500:
        logger.warning("%s: %s", type(exc).__name__, exc)
    return HTTPException(status_code=status, detail=str(exc))


@router.get("/status", response_model=ConnectionStatusRead)
async def get_status(service: HealthServiceDep) -> Any:
    try:
        state = await service.get_connection_status()
    except HealthSyncError as exc:
        raise _to_http(exc) from exc
    return ConnectionStatusRead(
        provider=service.provider_id,
        status=state.status,
        connection=(
            ConnectionRead.model_validate(state.connection) if state.connection else None
        ),
        last_sync=state.last_sync,
    )


@router.post("/connect", response_model=ConnectionRead, responses=_ERROR_RESPONSES)
async def connect(service: HealthServiceDep, body: ConnectRequest | None = None) -> Any:
    try:
        return await service.connect(body.permissions if body else None)
    except HealthSyncError as exc:
        raise _to_http(exc) from exc


@router.post("/disconnect", status_code=204, responses=_ERROR_RESPONSES)
async def disconnect(service: HealthServiceDep) -> None:
    try:
        await service.disconnect()
    except HealthSyncError as exc:
        raise _to_http(exc) from exc


@router.post("/sync", response_model=SyncResultRead, responses=_ERROR_RESPONSES)
async def run_sync(service: HealthServiceDep, body: SyncRequest | None = None) -> Any:
    body = body or SyncRequest()
    try:
        result = await service.sync(body.sync_type, body.lookback_days, body.categories)
    except HealthSyncError as exc:
        raise _to_http(exc) from exc
    return SyncResultRead.model_validate(result)


@router.get("/history", response_model=list[SyncLogRead])
async def get_history(
    service: HealthServiceDep,
    pagination: Annotated[PaginationParams, Depends()],
) -> Any:
    try:
        return await service.get_sync_history(pagination.limit, pagination.offset)
    except HealthSyncError as exc:
        raise _to_http(exc) from exc


@router.get("/activities", response_model=list[RecentActivityRead])
async def get_activities(
    service: HealthServiceDep,
    pagination: Annotated[PaginationParams, Depends()],
) -> Any:
    try:
        return await service.get_recent_activities(pagination.limit, pagination.offset)
    except HealthSyncError as exc:
        raise _to_http(exc) from exc


@router.post(
    "/activities",
    response_model=ManualActivityResult,
    status_code=201,
    responses=_ERROR_RESPONSES,
)
async def log_activity(service: HealthServiceDep, body: ManualActivityCreate) -> Any:
    activity = ManualActivity(
        challenge_id=body.challenge_id,
        activity_type=body.activity_type,
        value=body.value,
        client_event_id=body.client_event_id,
        unit=body.unit,
    )
    try:
        inserted = await service.log_activity(activity)
    except HealthSyncError as exc:
        raise _to_http(exc) from exc
    return ManualActivityResult(client_event_id=body.client_event_id, inserted=inserted)
