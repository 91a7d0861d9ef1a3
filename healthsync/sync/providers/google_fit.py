"""Google Fit provider (platform B).

Reads aggregated data sources through the Google Fit REST API.

API base: https://www.googleapis.com/fitness/v1/users/me

Endpoints used:
    /dataSources/{id}/datasets/{startNanos}-{endNanos}  - Point data per source
    /sessions                                           - Workout sessions

The OAuth access token is obtained by the mobile client (Google Sign-In) and
handed to the provider; this module never runs an OAuth flow itself.  Granted
permissions are derived from the token's scopes via the tokeninfo endpoint.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from typing import Any

import httpx

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

logger = logging.getLogger("healthsync.sync.providers.google_fit")

_NANOS_PER_SECOND = 1_000_000_000


def _to_nanos(moment: datetime) -> int:
    return int(moment.timestamp()) * _NANOS_PER_SECOND + moment.microsecond * 1000


def _from_nanos(value: Any) -> datetime | None:
    try:
        nanos = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(nanos / _NANOS_PER_SECOND, tz=timezone.utc)


def _from_millis(value: Any) -> datetime | None:
    try:
        millis = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


class GoogleFitProvider(HealthProvider):
    """Google Fit REST provider.

    Available only when an access token is configured.  Every HTTP or
    decoding failure during a sample read is raised as ``ProviderFetchError``.
    """

    PROVIDER_ID = ProviderId.GOOGLEFIT
    DISPLAY_NAME = "Google Fit"

    def __init__(
        self,
        access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 30.0,
        config: SyncConfig | None = None,
    ) -> None:
        """Initialize the Google Fit provider.

        Args:
            access_token: OAuth2 Bearer token with fitness read scopes.
            http_client:  Optional pre-configured httpx client (for testing).
            timeout_s:    Per-request timeout when no client is injected.
            config:       Sync config override.
        """
        super().__init__(config)
        self._access_token = access_token or ""
        self._http_client = http_client
        self._timeout_s = timeout_s

    def set_access_token(self, access_token: str) -> None:
        """Swap in a refreshed OAuth token for later requests."""
        self._access_token = access_token

    async def is_available(self) -> bool:
        return bool(self._access_token)

    async def get_authorization_status(self) -> PermissionResult:
        if not self._access_token:
            return PermissionResult(not_determined=tuple(HealthPermission))
        try:
            granted = await self._granted_permissions()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Google Fit tokeninfo failed: %s", exc)
            return PermissionResult(not_determined=tuple(HealthPermission))
        return PermissionResult(
            granted=tuple(p for p in HealthPermission if p in granted),
            denied=tuple(p for p in HealthPermission if p not in granted),
        )

    async def request_authorization(
        self, permissions: Sequence[HealthPermission]
    ) -> PermissionResult:
        # Consent happens on the device; the token's scopes are the answer.
        requested = tuple(permissions)
        if not self._access_token:
            return PermissionResult(denied=requested)
        try:
            granted = await self._granted_permissions()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Google Fit authorization check failed: %s", exc)
            return PermissionResult(denied=requested)
        return PermissionResult(
            granted=tuple(p for p in requested if p in granted),
            denied=tuple(p for p in requested if p not in granted),
        )

    async def _fetch_samples(
        self, date_range: DateRange, categories: Sequence[ActivityCategory]
    ) -> list[HealthSample]:
        if not self._access_token:
            return []

        samples: list[HealthSample] = []
        try:
            for category in categories:
                if category == ActivityCategory.WORKOUTS:
                    samples.extend(await self._fetch_sessions(date_range))
                    continue
                for source_id in self._config.google_fit.data_sources_for(category):
                    samples.extend(
                        await self._fetch_dataset(source_id, category, date_range)
                    )
        except (httpx.HTTPError, ValueError, KeyError) as exc:
            raise ProviderFetchError(
                self.PROVIDER_ID.value, f"Google Fit request failed: {exc}"
            ) from exc
        return samples

    # ------------------------------------------------------------------
    # Endpoint helpers
    # ------------------------------------------------------------------

    async def _granted_permissions(self) -> set[HealthPermission]:
        data = await self._get(
            self._config.google_fit.tokeninfo_url,
            params={"access_token": self._access_token},
        )
        granted: set[HealthPermission] = set()
        for scope in str(data.get("scope", "")).split():
            granted.update(self._config.google_fit.scope_permissions.get(scope, []))
        return granted

    async def _fetch_dataset(
        self, source_id: str, category: ActivityCategory, date_range: DateRange
    ) -> list[HealthSample]:
        dataset_id = f"{_to_nanos(date_range.start)}-{_to_nanos(date_range.end)}"
        data = await self._get(
            f"{self._config.google_fit.api_base}/dataSources/{source_id}/datasets/{dataset_id}"
        )

        samples: list[HealthSample] = []
        for point in data.get("point", []):
            start = _from_nanos(point.get("startTimeNanos"))
            end = _from_nanos(point.get("endTimeNanos")) or start
            value = self._point_value(point)
            if start is None or value is None:
                continue
            samples.append(
                HealthSample(
                    id=f"{source_id}:{point.get('startTimeNanos')}:{point.get('endTimeNanos')}",
                    category=category,
                    value=value,
                    unit=self._config.default_unit(category),
                    start_date=start,
                    end_date=end,
                    source_name=point.get("originDataSourceId") or "Google Fit",
                    source_id=source_id,
                    metadata={"data_type": point.get("dataTypeName")},
                )
            )
        return samples

    async def _fetch_sessions(self, date_range: DateRange) -> list[HealthSample]:
        data = await self._get(
            f"{self._config.google_fit.api_base}/sessions",
            params={
                "startTime": date_range.start.isoformat().replace("+00:00", "Z"),
                "endTime": date_range.end.isoformat().replace("+00:00", "Z"),
            },
        )

        samples: list[HealthSample] = []
        for session in data.get("session", []):
            start = _from_millis(session.get("startTimeMillis"))
            end = _from_millis(session.get("endTimeMillis")) or start
            if start is None or not session.get("id"):
                continue
            app = session.get("application") or {}
            samples.append(
                HealthSample(
                    id=f"session:{session['id']}",
                    category=ActivityCategory.WORKOUTS,
                    value=1.0,
                    unit=self._config.default_unit(ActivityCategory.WORKOUTS),
                    start_date=start,
                    end_date=end,
                    source_name=app.get("name") or app.get("packageName") or "Google Fit",
                    source_id=app.get("packageName") or "",
                    metadata={
                        "name": session.get("name"),
                        "activity_type": session.get("activityType"),
                    },
                )
            )
        return samples

    @classmethod
    def _point_value(cls, point: dict[str, Any]) -> float | None:
        """Return the first numeric value of a data point (intVal or fpVal)."""
        for entry in point.get("value") or []:
            if "intVal" in entry:
                return cls._safe_float(entry["intVal"])
            if "fpVal" in entry:
                return cls._safe_float(entry["fpVal"])
        return None

    async def _get(self, url: str, params: dict | None = None) -> dict:
        """Make an authenticated GET request to the Google Fit API.

        Raises:
            httpx.HTTPStatusError: On non-2xx responses.
        """
        headers = {"Authorization": f"Bearer {self._access_token}"}

        if self._http_client:
            response = await self._http_client.get(url, params=params, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                response = await client.get(url, params=params, headers=headers)

        response.raise_for_status()
        return response.json()
