"""Apple HealthKit provider (platform A).

HealthKit has no server-side API; samples live in the on-device store and are
reached through a ``HealthKitBridge``.  On iOS the bridge wraps the native
HealthKit query APIs.  ``AppleHealthExportBridge`` implements the same
protocol over an Apple Health ``export.xml`` file, which makes the provider
usable off-device (imports, development, tests).

HealthKit never reveals whether *read* access was granted, so
``get_authorization_status()`` reports every permission as not determined and
``request_authorization()`` can only tell "the prompt succeeded" from "it
failed".
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol
from xml.etree import ElementTree as ET

from healthsync.sync.base import (
    ActivityCategory,
    DateRange,
    HealthPermission,
    HealthSample,
    PermissionResult,
    ProviderId,
    parse_timestamp,
)
from healthsync.sync.config_loader import SyncConfig
from healthsync.sync.errors import ProviderFetchError
from healthsync.sync.providers.base import HealthProvider

logger = logging.getLogger("healthsync.sync.providers.healthkit")

_HK_WORKOUT = "HKWorkoutType"


class HealthKitBridge(Protocol):
    """Narrow boundary over the native HealthKit store.

    Rows returned by ``query_samples`` are dicts with the keys ``id``,
    ``value``, ``unit``, ``startDate``, ``endDate``, ``sourceName`` and
    ``sourceId``; missing keys are tolerated.
    """

    async def is_available(self) -> bool: ...

    async def request_read_access(self, identifiers: Sequence[str]) -> bool: ...

    async def query_samples(
        self, identifier: str, start: datetime, end: datetime, limit: int
    ) -> list[dict[str, Any]]: ...


class HealthKitProvider(HealthProvider):
    """HealthKit provider.

    Without a bridge (e.g. not running on iOS and no export configured) the
    provider reports itself unavailable and every read returns nothing.
    """

    PROVIDER_ID = ProviderId.HEALTHKIT
    DISPLAY_NAME = "Apple Health"

    def __init__(
        self, bridge: HealthKitBridge | None = None, config: SyncConfig | None = None
    ) -> None:
        super().__init__(config)
        self._bridge = bridge

    async def is_available(self) -> bool:
        if self._bridge is None:
            return False
        try:
            return await self._bridge.is_available()
        except Exception as exc:
            logger.warning("HealthKit availability check failed: %s", exc)
            return False

    async def get_authorization_status(self) -> PermissionResult:
        return PermissionResult(not_determined=tuple(HealthPermission))

    async def request_authorization(
        self, permissions: Sequence[HealthPermission]
    ) -> PermissionResult:
        requested = tuple(permissions)
        if self._bridge is None:
            return PermissionResult(denied=requested)

        permission_map = self._config.healthkit.permission_map
        read_types = [permission_map[p] for p in requested if p in permission_map]
        try:
            ok = await self._bridge.request_read_access(read_types)
        except Exception as exc:
            logger.error("HealthKit authorization error: %s", exc)
            ok = False
        if not ok:
            return PermissionResult(denied=requested)
        return PermissionResult(granted=requested)

    async def _fetch_samples(
        self, date_range: DateRange, categories: Sequence[ActivityCategory]
    ) -> list[HealthSample]:
        if self._bridge is None:
            return []

        limit = self._config.query.healthkit_sample_limit
        samples: list[HealthSample] = []
        for category in categories:
            for identifier in self._config.healthkit.identifiers_for(category):
                try:
                    rows = await self._bridge.query_samples(
                        identifier, date_range.start, date_range.end, limit
                    )
                except Exception as exc:
                    raise ProviderFetchError(
                        self.PROVIDER_ID.value,
                        f"HealthKit query failed for {identifier}: {exc}",
                    ) from exc
                samples.extend(
                    s for s in (self._to_sample(identifier, category, r) for r in rows) if s
                )
        return samples

    def _to_sample(
        self, identifier: str, category: ActivityCategory, row: dict[str, Any]
    ) -> HealthSample | None:
        start = parse_timestamp(row.get("startDate"))
        end = parse_timestamp(row.get("endDate")) or start
        value = self._safe_float(row.get("value"))
        if identifier == _HK_WORKOUT and value is None:
            value = 1.0  # one workout
        if start is None or value is None:
            logger.debug("Skipping malformed HealthKit row for %s: %r", identifier, row)
            return None
        return HealthSample(
            id=str(row.get("id") or f"{identifier}-{row.get('startDate')}-{row.get('value')}"),
            category=category,
            value=value,
            unit=row.get("unit") or self._config.default_unit(category),
            start_date=start,
            end_date=end,
            source_name=row.get("sourceName") or "",
            source_id=row.get("sourceId") or "",
            metadata={"identifier": identifier},
        )


# ---------------------------------------------------------------------------
# export.xml bridge
# ---------------------------------------------------------------------------


def _parse_export_datetime(value: str) -> datetime | None:
    """Parse Apple's ``2026-02-23 08:00:00 -0800`` export timestamps to UTC."""
    if not value:
        return None
    try:
        dt = datetime.strptime(value, "%Y-%m-%d %H:%M:%S %z")
    except ValueError:
        return parse_timestamp(value.replace(" ", "T", 1))
    return dt.astimezone(timezone.utc)


class AppleHealthExportBridge:
    """``HealthKitBridge`` backed by an Apple Health ``export.xml`` file.

    The export carries no sample ids, so each row gets a synthetic id built
    from type, source and interval, which is stable across re-exports of the
    same data.  The file is parsed in a worker thread and parsed again whenever
    its modification time or size changes.
    """

    def __init__(self, export_path: Path | str) -> None:
        self._path = Path(export_path)
        self._rows: dict[str, list[dict[str, Any]]] | None = None
        self._version: tuple[int, int] | None = None
        self._lock = asyncio.Lock()

    async def is_available(self) -> bool:
        return self._path.is_file()

    async def request_read_access(self, identifiers: Sequence[str]) -> bool:
        # Exporting the file was the user's consent.
        return self._path.is_file()

    async def query_samples(
        self, identifier: str, start: datetime, end: datetime, limit: int
    ) -> list[dict[str, Any]]:
        rows = await self._load()
        matching = [
            r for r in rows.get(identifier, [])
            if start <= r["_start"] < end
        ]
        matching.sort(key=lambda r: r["_start"], reverse=True)
        return [
            {k: v for k, v in r.items() if not k.startswith("_")}
            for r in matching[:limit]
        ]

    async def _load(self) -> dict[str, list[dict[str, Any]]]:
        async with self._lock:
            try:
                stat = self._path.stat()
            except OSError as exc:
                raise ValueError(f"Invalid Apple Health export: {exc}") from exc
            version = (stat.st_mtime_ns, stat.st_size)
            if self._rows is None or version != self._version:
                self._rows = await asyncio.to_thread(self._parse, self._path)
                self._version = version
                logger.info("Loaded Apple Health export %s", self._path)
        return self._rows

    @staticmethod
    def _parse(path: Path) -> dict[str, list[dict[str, Any]]]:
        try:
            root = ET.parse(path).getroot()
        except (ET.ParseError, OSError) as exc:
            logger.error("Apple Health export parse error: %s", exc)
            raise ValueError(f"Invalid Apple Health export: {exc}") from exc

        by_type: dict[str, list[dict[str, Any]]] = {}

        for record in root.iter("Record"):
            rec_type = record.get("type", "")
            start = _parse_export_datetime(record.get("startDate", ""))
            end = _parse_export_datetime(record.get("endDate", "")) or start
            if not rec_type or start is None:
                continue
            source = record.get("sourceName", "")
            by_type.setdefault(rec_type, []).append({
                "id": f"{rec_type}|{source}|{start.isoformat()}|{end.isoformat()}",
                "value": record.get("value"),
                "unit": record.get("unit"),
                "startDate": start.isoformat(),
                "endDate": end.isoformat(),
                "sourceName": source,
                "sourceId": source,
                "_start": start,
            })

        for workout in root.iter("Workout"):
            start = _parse_export_datetime(workout.get("startDate", ""))
            end = _parse_export_datetime(workout.get("endDate", "")) or start
            if start is None:
                continue
            source = workout.get("sourceName", "")
            activity = workout.get("workoutActivityType", "")
            by_type.setdefault(_HK_WORKOUT, []).append({
                "id": f"{_HK_WORKOUT}|{activity}|{source}|{start.isoformat()}",
                "value": 1,
                "unit": "workouts",
                "startDate": start.isoformat(),
                "endDate": end.isoformat(),
                "sourceName": source,
                "sourceId": source,
                "_start": start,
            })

        logger.info(
            "Apple Health export: parsed %d records across %d types",
            sum(len(v) for v in by_type.values()), len(by_type),
        )
        return by_type
