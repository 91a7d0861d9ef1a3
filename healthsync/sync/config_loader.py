"""Load, validate, and hot-reload the sync engine configuration.

The config lives in ``sync_config.yaml`` alongside this module.  It is loaded
once and cached.  Call ``reload_sync_config()`` to re-read it from disk.

Usage::

    from healthsync.sync.config_loader import get_sync_config

    config = get_sync_config()
    config.lookback_for(SyncType.MANUAL)                  # 7
    config.healthkit.category_for("HKWorkoutType")        # ActivityCategory.WORKOUTS
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from healthsync.sync.base import ActivityCategory, HealthPermission, SyncType
from healthsync.sync.errors import ConfigValidationError

logger = logging.getLogger("healthsync.sync.config")

_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class UploadConfig:
    """Batch upload settings and the server's recorded_at acceptance window."""

    batch_size: int
    max_age_days: int
    max_future_minutes: int


@dataclass
class QueryConfig:
    max_range_days: int
    healthkit_sample_limit: int


@dataclass
class RetryConfig:
    """Backoff for manual activity logging on retryable backend errors."""

    max_attempts: int
    base_delay_s: float


@dataclass
class HealthKitConfig:
    type_map: dict[str, ActivityCategory]
    permission_map: dict[HealthPermission, str]

    def category_for(self, identifier: str) -> ActivityCategory | None:
        return self.type_map.get(identifier)

    def identifiers_for(self, category: ActivityCategory) -> list[str]:
        return [ident for ident, cat in self.type_map.items() if cat == category]


@dataclass
class GoogleFitConfig:
    api_base: str
    tokeninfo_url: str
    data_sources: dict[str, ActivityCategory]
    scope_permissions: dict[str, list[HealthPermission]]

    def data_sources_for(self, category: ActivityCategory) -> list[str]:
        return [ds for ds, cat in self.data_sources.items() if cat == category]


@dataclass
class SyncConfig:
    """Complete, validated sync engine configuration.

    Attributes:
        version:             Config schema version string.
        lookback_days:       Default lookback per sync type.
        upload:              Batch size and server acceptance window.
        query:               Provider query limits.
        connect_permissions: Permissions requested by ``connect()`` by default.
        default_units:       Unit used when a provider omits one.
        healthkit:           HealthKit identifier mappings.
        google_fit:          Google Fit endpoints and data source mappings.
        retry:               Manual activity logging backoff.
    """

    version: str
    lookback_days: dict[SyncType, int]
    upload: UploadConfig
    query: QueryConfig
    connect_permissions: list[HealthPermission]
    default_units: dict[ActivityCategory, str]
    healthkit: HealthKitConfig
    google_fit: GoogleFitConfig
    retry: RetryConfig
    _raw: dict = field(default_factory=dict, repr=False)

    def lookback_for(self, sync_type: SyncType) -> int | None:
        """Return the default lookback for a sync type, or None for ``custom``."""
        return self.lookback_days.get(sync_type)

    def default_unit(self, category: ActivityCategory) -> str:
        return self.default_units.get(category, "units")


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            return yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Collects every problem before failing so a broken file can be fixed in
    one pass.

    Raises:
        ConfigValidationError: If required fields are missing or invalid.
    """
    errors: list[str] = []

    def _positive_int(section: dict, key: str, path: str, default: int) -> int:
        value = section.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be an integer, got {value!r}")
            return default
        if number <= 0:
            errors.append(f"{path}.{key} must be positive, got {number}")
        return number

    def _non_negative_float(section: dict, key: str, path: str, default: float) -> float:
        value = section.get(key, default)
        try:
            number = float(value)
        except (TypeError, ValueError):
            errors.append(f"{path}.{key} must be a number, got {value!r}")
            return default
        if number < 0:
            errors.append(f"{path}.{key} must not be negative, got {number}")
        return number

    def _category(value: Any, path: str) -> ActivityCategory | None:
        try:
            return ActivityCategory(value)
        except ValueError:
            errors.append(f"{path}: unknown activity category {value!r}")
            return None

    def _permission(value: Any, path: str) -> HealthPermission | None:
        try:
            return HealthPermission(value)
        except ValueError:
            errors.append(f"{path}: unknown permission {value!r}")
            return None

    version = str(raw.get("version", "1.0"))

    # ── Lookback ──
    lb_raw = raw.get("lookback_days") or {}
    lookback_days: dict[SyncType, int] = {}
    for sync_type in (SyncType.BACKGROUND, SyncType.MANUAL, SyncType.INITIAL):
        if sync_type.value not in lb_raw:
            errors.append(f"lookback_days.{sync_type.value} is required")
            continue
        lookback_days[sync_type] = _positive_int(lb_raw, sync_type.value, "lookback_days", 1)
    for key in lb_raw:
        if key not in {"background", "manual", "initial"}:
            errors.append(f"lookback_days.{key} is not a sync type with a default lookback")

    # ── Upload / query / retry ──
    up_raw = raw.get("upload") or {}
    upload = UploadConfig(
        batch_size=_positive_int(up_raw, "batch_size", "upload", 100),
        max_age_days=_positive_int(up_raw, "max_age_days", "upload", 90),
        max_future_minutes=_positive_int(up_raw, "max_future_minutes", "upload", 60),
    )
    q_raw = raw.get("query") or {}
    query = QueryConfig(
        max_range_days=_positive_int(q_raw, "max_range_days", "query", 365),
        healthkit_sample_limit=_positive_int(q_raw, "healthkit_sample_limit", "query", 1000),
    )

    r_raw = raw.get("retry") or {}
    retry = RetryConfig(
        max_attempts=_positive_int(r_raw, "max_attempts", "retry", 3),
        base_delay_s=_non_negative_float(r_raw, "base_delay_s", "retry", 0.5),
    )

    # ── Permissions / units ──
    connect_permissions = [
        p
        for p in (
            _permission(v, "connect_permissions") for v in raw.get("connect_permissions") or []
        )
        if p is not None
    ]
    if not connect_permissions:
        errors.append("connect_permissions must list at least one permission")

    default_units: dict[ActivityCategory, str] = {}
    for key, unit in (raw.get("default_units") or {}).items():
        category = _category(key, "default_units")
        if category is not None:
            default_units[category] = str(unit)

    # ── HealthKit ──
    hk_raw = raw.get("healthkit") or {}
    hk_types: dict[str, ActivityCategory] = {}
    for ident, value in (hk_raw.get("type_map") or {}).items():
        category = _category(value, f"healthkit.type_map.{ident}")
        if category is not None:
            hk_types[ident] = category
    hk_permissions: dict[HealthPermission, str] = {}
    for key, ident in (hk_raw.get("permission_map") or {}).items():
        permission = _permission(key, "healthkit.permission_map")
        if permission is not None:
            hk_permissions[permission] = str(ident)
    if not hk_types:
        errors.append("healthkit.type_map is missing or empty")

    # ── Google Fit ──
    gf_raw = raw.get("google_fit") or {}
    gf_sources: dict[str, ActivityCategory] = {}
    for source_id, value in (gf_raw.get("data_sources") or {}).items():
        category = _category(value, f"google_fit.data_sources.{source_id}")
        if category is not None:
            gf_sources[source_id] = category
    gf_scopes: dict[str, list[HealthPermission]] = {}
    for scope, perms in (gf_raw.get("scope_permissions") or {}).items():
        gf_scopes[scope] = [
            p
            for p in (_permission(v, f"google_fit.scope_permissions.{scope}") for v in perms or [])
            if p is not None
        ]
    for key in ("api_base", "tokeninfo_url"):
        if not gf_raw.get(key):
            errors.append(f"google_fit.{key} is required")

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=version,
        lookback_days=lookback_days,
        upload=upload,
        query=query,
        connect_permissions=connect_permissions,
        default_units=default_units,
        healthkit=HealthKitConfig(type_map=hk_types, permission_map=hk_permissions),
        google_fit=GoogleFitConfig(
            api_base=str(gf_raw["api_base"]).rstrip("/"),
            tokeninfo_url=str(gf_raw["tokeninfo_url"]),
            data_sources=gf_sources,
            scope_permissions=gf_scopes,
        ),
        retry=retry,
        _raw=raw,
    )


def load_sync_config(path: Path | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = path or _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig, loading it on first call. Thread-safe."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | None = None) -> SyncConfig:
    """Reload the config from disk and replace the global instance.

    If validation fails the old config is kept and the error is re-raised.
    """
    global _config
    new_config = load_sync_config(path)
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
