"""Tests for health providers: shared query rules, HealthKit, Google Fit, registry."""

from __future__ import annotations

import textwrap
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from healthsync.config import Settings
from healthsync.sync.base import ActivityCategory, DateRange, HealthPermission, ProviderId
from healthsync.sync.config_loader import SyncConfig
from healthsync.sync.errors import InvalidDateRangeError, ProviderFetchError
from healthsync.sync.providers import (
    AppleHealthExportBridge,
    GoogleFitProvider,
    HealthKitProvider,
    MockHealthProvider,
    get_provider_class,
    resolve_provider_choice,
    select_provider,
)

DAY_START = datetime(2026, 2, 23, tzinfo=timezone.utc)
DAY = DateRange(start=DAY_START, end=DAY_START + timedelta(days=1))


# ---------------------------------------------------------------------------
# Shared query behaviour (via the mock)
# ---------------------------------------------------------------------------


class TestQuerySamples:
    @pytest.mark.asyncio
    async def test_inverted_range_rejected(self, make_provider) -> None:
        provider = make_provider(samples=[])
        with pytest.raises(InvalidDateRangeError):
            await provider.query_samples(DateRange(start=DAY.end, end=DAY.start))
        assert provider.query_calls == []

    @pytest.mark.asyncio
    async def test_range_longer_than_a_year_rejected(self, make_provider) -> None:
        provider = make_provider(samples=[])
        with pytest.raises(InvalidDateRangeError):
            await provider.query_samples(
                DateRange(start=DAY.end - timedelta(days=366), end=DAY.end)
            )

    @pytest.mark.asyncio
    async def test_empty_range_is_valid(self, make_provider) -> None:
        provider = make_provider(samples=[])
        assert await provider.query_samples(DateRange(start=DAY.start, end=DAY.start)) == []

    @pytest.mark.asyncio
    async def test_dedup_sort_and_window(self, make_provider, make_samples) -> None:
        inside = make_samples(3, end=DAY_START + timedelta(hours=12))
        outside = make_samples(1, prefix="late", end=DAY.end + timedelta(hours=2))
        provider = make_provider(samples=inside + [inside[0]] + outside)

        result = await provider.query_samples(DAY)

        assert [s.id for s in result] == ["s-0", "s-1", "s-2"]
        starts = [s.start_date for s in result]
        assert starts == sorted(starts, reverse=True)

    @pytest.mark.asyncio
    async def test_category_filter(self, make_provider, make_samples) -> None:
        end = DAY_START + timedelta(hours=12)
        steps = make_samples(2, end=end)
        calories = make_samples(2, category=ActivityCategory.CALORIES, prefix="c", end=end)
        provider = make_provider(samples=steps + calories)

        result = await provider.query_samples(DAY, [ActivityCategory.CALORIES])

        assert {s.id for s in result} == {"c-0", "c-1"}


class TestMockProvider:
    @pytest.mark.asyncio
    async def test_generated_samples_are_deterministic(self, make_provider) -> None:
        first = await make_provider().query_samples(DAY, [ActivityCategory.STEPS])
        second = await make_provider().query_samples(DAY, [ActivityCategory.STEPS])

        assert first == second
        assert len(first) == 1
        assert 2000 <= first[0].value <= 15000

    @pytest.mark.asyncio
    async def test_authorization_merges_grants(self, make_provider) -> None:
        provider = make_provider(granted_permissions=[])
        await provider.request_authorization([HealthPermission.WORKOUTS])

        status = await provider.get_authorization_status()

        assert status.granted == (HealthPermission.WORKOUTS,)
        assert HealthPermission.STEPS in status.not_determined

    @pytest.mark.asyncio
    async def test_set_config_changes_behaviour(self, make_provider) -> None:
        provider = make_provider(samples=[])
        provider.set_config(fetch_fails=True, error_message="offline")
        with pytest.raises(ProviderFetchError, match="offline"):
            await provider.query_samples(DAY)


# ---------------------------------------------------------------------------
# HealthKit
# ---------------------------------------------------------------------------


class FakeBridge:
    def __init__(self, rows: dict[str, list[dict[str, Any]]] | None = None,
                 grant: bool = True, fail: bool = False) -> None:
        self.rows = rows or {}
        self.grant = grant
        self.fail = fail
        self.requested: list[str] = []

    async def is_available(self) -> bool:
        return True

    async def request_read_access(self, identifiers: Sequence[str]) -> bool:
        self.requested = list(identifiers)
        return self.grant

    async def query_samples(
        self, identifier: str, start: datetime, end: datetime, limit: int
    ) -> list[dict[str, Any]]:
        if self.fail:
            raise RuntimeError("store locked")
        return list(self.rows.get(identifier, []))


class TestHealthKitProvider:
    @pytest.mark.asyncio
    async def test_unavailable_without_bridge(self, sync_config: SyncConfig) -> None:
        provider = HealthKitProvider(config=sync_config)
        assert await provider.is_available() is False
        assert await provider.query_samples(DAY) == []

    @pytest.mark.asyncio
    async def test_status_is_never_determined(self, sync_config: SyncConfig) -> None:
        status = await HealthKitProvider(FakeBridge(), sync_config).get_authorization_status()
        assert status.granted == ()
        assert set(status.not_determined) == set(HealthPermission)

    @pytest.mark.asyncio
    async def test_authorization_maps_to_read_types(self, sync_config: SyncConfig) -> None:
        bridge = FakeBridge()
        provider = HealthKitProvider(bridge, sync_config)

        result = await provider.request_authorization(
            [HealthPermission.STEPS, HealthPermission.WORKOUTS]
        )

        assert result.granted == (HealthPermission.STEPS, HealthPermission.WORKOUTS)
        assert bridge.requested == ["HKQuantityTypeIdentifierStepCount", "HKWorkoutType"]

    @pytest.mark.asyncio
    async def test_failed_prompt_denies_everything(self, sync_config: SyncConfig) -> None:
        provider = HealthKitProvider(FakeBridge(grant=False), sync_config)
        result = await provider.request_authorization([HealthPermission.STEPS])
        assert result.granted == ()
        assert result.denied == (HealthPermission.STEPS,)

    @pytest.mark.asyncio
    async def test_rows_become_samples(self, sync_config: SyncConfig) -> None:
        bridge = FakeBridge({
            "HKQuantityTypeIdentifierStepCount": [{
                "id": "hk-1",
                "value": 842,
                "unit": "count",
                "startDate": "2026-02-23T08:00:00Z",
                "endDate": "2026-02-23T08:30:00Z",
                "sourceName": "Apple Watch",
                "sourceId": "com.apple.health.watch",
            }],
            "HKWorkoutType": [{
                "id": "wk-1",
                "startDate": "2026-02-23T07:00:00Z",
                "endDate": "2026-02-23T07:45:00Z",
            }],
        })
        provider = HealthKitProvider(bridge, sync_config)

        result = await provider.query_samples(
            DAY, [ActivityCategory.STEPS, ActivityCategory.WORKOUTS]
        )

        steps, workout = result
        assert steps.id == "hk-1"
        assert steps.value == 842.0
        assert steps.category == ActivityCategory.STEPS
        assert steps.source_name == "Apple Watch"
        assert workout.category == ActivityCategory.WORKOUTS
        assert workout.value == 1.0
        assert workout.unit == "workouts"

    @pytest.mark.asyncio
    async def test_malformed_rows_skipped(self, sync_config: SyncConfig) -> None:
        bridge = FakeBridge({
            "HKQuantityTypeIdentifierStepCount": [
                {"id": "bad", "value": "n/a", "startDate": "2026-02-23T08:00:00Z"},
                {"id": "no-start", "value": 10},
            ],
        })
        result = await HealthKitProvider(bridge, sync_config).query_samples(
            DAY, [ActivityCategory.STEPS]
        )
        assert result == []

    @pytest.mark.asyncio
    async def test_bridge_failure_raises_fetch_error(self, sync_config: SyncConfig) -> None:
        provider = HealthKitProvider(FakeBridge(fail=True), sync_config)
        with pytest.raises(ProviderFetchError, match="store locked"):
            await provider.query_samples(DAY, [ActivityCategory.STEPS])


EXPORT_XML = textwrap.dedent("""\
    <?xml version="1.0" encoding="UTF-8"?>
    <HealthData locale="en_US">
      <Record type="HKQuantityTypeIdentifierStepCount" sourceName="iPhone" unit="count"
              startDate="2026-02-23 08:00:00 -0800" endDate="2026-02-23 08:10:00 -0800"
              value="1200"/>
      <Record type="HKQuantityTypeIdentifierStepCount" sourceName="iPhone" unit="count"
              startDate="2026-02-20 08:00:00 -0800" endDate="2026-02-20 08:10:00 -0800"
              value="900"/>
      <Record type="HKQuantityTypeIdentifierActiveEnergyBurned" sourceName="Apple Watch"
              unit="kcal" startDate="2026-02-23 09:00:00 +0000"
              endDate="2026-02-23 09:30:00 +0000" value="85.5"/>
      <Workout workoutActivityType="HKWorkoutActivityTypeRunning" sourceName="Apple Watch"
               startDate="2026-02-23 06:00:00 +0000" endDate="2026-02-23 06:40:00 +0000"/>
    </HealthData>
""")


class TestAppleHealthExportBridge:
    @pytest.fixture
    def export_path(self, tmp_path: Path) -> Path:
        path = tmp_path / "export.xml"
        path.write_text(EXPORT_XML, encoding="utf-8")
        return path

    @pytest.mark.asyncio
    async def test_export_samples(self, export_path: Path, sync_config: SyncConfig) -> None:
        provider = HealthKitProvider(AppleHealthExportBridge(export_path), sync_config)

        assert await provider.is_available() is True
        result = await provider.query_samples(DAY)

        by_category = {s.category: s for s in result}
        assert set(by_category) == {
            ActivityCategory.STEPS, ActivityCategory.CALORIES, ActivityCategory.WORKOUTS,
        }
        steps = by_category[ActivityCategory.STEPS]
        assert steps.value == 1200.0
        assert steps.start_date == datetime(2026, 2, 23, 16, 0, tzinfo=timezone.utc)
        assert by_category[ActivityCategory.CALORIES].value == 85.5
        assert by_category[ActivityCategory.WORKOUTS].value == 1.0

    @pytest.mark.asyncio
    async def test_synthetic_ids_are_stable(self, export_path: Path, sync_config: SyncConfig) -> None:
        first = await HealthKitProvider(
            AppleHealthExportBridge(export_path), sync_config
        ).query_samples(DAY)
        second = await HealthKitProvider(
            AppleHealthExportBridge(export_path), sync_config
        ).query_samples(DAY)
        assert [s.id for s in first] == [s.id for s in second]

    @pytest.mark.asyncio
    async def test_rewritten_export_is_reloaded(
        self, export_path: Path, sync_config: SyncConfig
    ) -> None:
        provider = HealthKitProvider(AppleHealthExportBridge(export_path), sync_config)
        before = await provider.query_samples(DAY, [ActivityCategory.STEPS])

        export_path.write_text(
            EXPORT_XML.replace(
                "</HealthData>",
                '  <Record type="HKQuantityTypeIdentifierStepCount" sourceName="iPhone" '
                'unit="count" startDate="2026-02-23 12:00:00 +0000" '
                'endDate="2026-02-23 12:05:00 +0000" value="450"/>\n</HealthData>',
            ),
            encoding="utf-8",
        )
        after = await provider.query_samples(DAY, [ActivityCategory.STEPS])

        assert [s.value for s in before] == [1200.0]
        assert sorted(s.value for s in after) == [450.0, 1200.0]

    @pytest.mark.asyncio
    async def test_missing_file_unavailable(self, tmp_path: Path, sync_config: SyncConfig) -> None:
        provider = HealthKitProvider(AppleHealthExportBridge(tmp_path / "none.xml"), sync_config)
        assert await provider.is_available() is False
        result = await provider.request_authorization([HealthPermission.STEPS])
        assert result.denied == (HealthPermission.STEPS,)

    @pytest.mark.asyncio
    async def test_corrupt_file_raises_fetch_error(
        self, tmp_path: Path, sync_config: SyncConfig
    ) -> None:
        path = tmp_path / "export.xml"
        path.write_text("<HealthData><Record", encoding="utf-8")
        provider = HealthKitProvider(AppleHealthExportBridge(path), sync_config)
        with pytest.raises(ProviderFetchError):
            await provider.query_samples(DAY, [ActivityCategory.STEPS])


# ---------------------------------------------------------------------------
# Google Fit
# ---------------------------------------------------------------------------

STEPS_SOURCE = "derived:com.google.step_count.delta:com.google.android.gms:estimated_steps"
POINT_START_NS = int((DAY_START + timedelta(hours=8)).timestamp()) * 1_000_000_000
POINT_END_NS = POINT_START_NS + 600 * 1_000_000_000


def _response(data: dict) -> MagicMock:
    response = MagicMock()
    response.raise_for_status = MagicMock()
    response.json = MagicMock(return_value=data)
    return response


def _google_fit_routes(url: str, params=None, headers=None) -> MagicMock:
    if "tokeninfo" in url:
        return _response({"scope": "https://www.googleapis.com/auth/fitness.activity.read"})
    if url.endswith("/sessions"):
        start_ms = int((DAY_START + timedelta(hours=6)).timestamp() * 1000)
        return _response({"session": [{
            "id": "run-1",
            "name": "Morning run",
            "startTimeMillis": str(start_ms),
            "endTimeMillis": str(start_ms + 40 * 60 * 1000),
            "activityType": 8,
            "application": {"packageName": "com.strava"},
        }]})
    if STEPS_SOURCE in url:
        return _response({"point": [{
            "startTimeNanos": str(POINT_START_NS),
            "endTimeNanos": str(POINT_END_NS),
            "dataTypeName": "com.google.step_count.delta",
            "value": [{"intVal": 640}],
        }]})
    return _response({"point": []})


@pytest.fixture
def fit_client() -> MagicMock:
    client = MagicMock()
    client.get = AsyncMock(side_effect=_google_fit_routes)
    return client


class TestGoogleFitProvider:
    @pytest.mark.asyncio
    async def test_availability_follows_token(self, sync_config: SyncConfig) -> None:
        assert await GoogleFitProvider(config=sync_config).is_available() is False
        assert await GoogleFitProvider("tok", config=sync_config).is_available() is True

    @pytest.mark.asyncio
    async def test_permissions_from_scopes(
        self, fit_client: MagicMock, sync_config: SyncConfig
    ) -> None:
        provider = GoogleFitProvider("tok", http_client=fit_client, config=sync_config)

        result = await provider.request_authorization(
            [HealthPermission.STEPS, HealthPermission.DISTANCE]
        )

        assert result.granted == (HealthPermission.STEPS,)
        assert result.denied == (HealthPermission.DISTANCE,)

    @pytest.mark.asyncio
    async def test_points_and_sessions(
        self, fit_client: MagicMock, sync_config: SyncConfig
    ) -> None:
        provider = GoogleFitProvider("tok", http_client=fit_client, config=sync_config)

        result = await provider.query_samples(
            DAY, [ActivityCategory.STEPS, ActivityCategory.WORKOUTS]
        )

        steps, session = result
        assert steps.id == f"{STEPS_SOURCE}:{POINT_START_NS}:{POINT_END_NS}"
        assert steps.value == 640.0
        assert steps.start_date == DAY_START + timedelta(hours=8)
        assert session.id == "session:run-1"
        assert session.category == ActivityCategory.WORKOUTS
        assert session.value == 1.0
        assert session.source_id == "com.strava"

        headers = fit_client.get.call_args.kwargs["headers"]
        assert headers == {"Authorization": "Bearer tok"}

    @pytest.mark.asyncio
    async def test_http_failure_raises_fetch_error(self, sync_config: SyncConfig) -> None:
        client = MagicMock()
        client.get = AsyncMock(side_effect=httpx.ConnectError("connection refused"))
        provider = GoogleFitProvider("tok", http_client=client, config=sync_config)

        with pytest.raises(ProviderFetchError, match="connection refused"):
            await provider.query_samples(DAY, [ActivityCategory.STEPS])

    @pytest.mark.asyncio
    async def test_no_token_reads_nothing(self, fit_client: MagicMock, sync_config: SyncConfig) -> None:
        provider = GoogleFitProvider(http_client=fit_client, config=sync_config)
        assert await provider.query_samples(DAY) == []
        fit_client.get.assert_not_called()


# ---------------------------------------------------------------------------
# Registry / selection
# ---------------------------------------------------------------------------


class TestProviderRegistry:
    def test_get_provider_class(self) -> None:
        assert get_provider_class("healthkit") is HealthKitProvider
        assert get_provider_class("googlefit") is GoogleFitProvider

    def test_unknown_choice(self) -> None:
        with pytest.raises(KeyError):
            get_provider_class("fitbit")

    @pytest.mark.parametrize(
        "configured, platform, expected",
        [
            ("auto", "ios", "healthkit"),
            ("auto", "android", "googlefit"),
            ("auto", "linux", ""),
            ("mock", "ios", "mock"),
        ],
    )
    def test_resolve_choice(self, configured: str, platform: str, expected: str) -> None:
        assert resolve_provider_choice(configured, platform) == expected

    def test_select_mock(self) -> None:
        provider = select_provider(Settings(health_provider="mock"))
        assert isinstance(provider, MockHealthProvider)

    def test_server_auto_prefers_export(self, tmp_path: Path) -> None:
        settings = Settings(health_provider="auto", apple_health_export_path=str(tmp_path / "e.xml"))
        provider = select_provider(settings, platform="linux")
        assert provider.provider == ProviderId.HEALTHKIT

    def test_server_auto_falls_back_to_google_fit(self) -> None:
        settings = Settings(health_provider="auto", google_fit_access_token="tok")
        provider = select_provider(settings, platform="linux")
        assert provider.provider == ProviderId.GOOGLEFIT

    @pytest.mark.asyncio
    async def test_configured_token_only_serves_its_owner(self) -> None:
        settings = Settings(
            health_provider="googlefit",
            google_fit_access_token="owner-token",
            health_provider_owner_id="user-a",
        )

        owner = select_provider(settings, user_id="user-a")
        other = select_provider(settings, user_id="user-b")

        assert await owner.is_available() is True
        assert await other.is_available() is False

    @pytest.mark.asyncio
    async def test_user_token_makes_google_fit_available(self) -> None:
        settings = Settings(health_provider="googlefit", health_provider_owner_id="user-a")
        provider = select_provider(settings, user_id="user-b", access_token="user-b-token")
        assert await provider.is_available() is True

    @pytest.mark.asyncio
    async def test_export_file_only_serves_its_owner(self, tmp_path: Path) -> None:
        path = tmp_path / "export.xml"
        path.write_text(EXPORT_XML, encoding="utf-8")
        settings = Settings(
            health_provider="healthkit",
            apple_health_export_path=str(path),
            health_provider_owner_id="user-a",
        )

        assert await select_provider(settings, user_id="user-a").is_available() is True
        assert await select_provider(settings, user_id="user-b").is_available() is False
