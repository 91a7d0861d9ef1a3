"""Health data providers.

Each provider implements the HealthProvider ABC and handles:
- Availability and authorization checks against its data source
- Reading raw samples for a date range
- Mapping provider-native types onto canonical activity categories

Available providers:
    HealthKitProvider  - Apple HealthKit (native bridge or export.xml)
    GoogleFitProvider  - Google Fit REST API (OAuth2 token)
    MockHealthProvider - Deterministic in-memory double
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

from healthsync.sync.providers.base import HealthProvider
from healthsync.sync.providers.google_fit import GoogleFitProvider
from healthsync.sync.providers.healthkit import (
    AppleHealthExportBridge,
    HealthKitBridge,
    HealthKitProvider,
)
from healthsync.sync.providers.mock import MockHealthConfig, MockHealthProvider

if TYPE_CHECKING:
    from healthsync.config import Settings

logger = logging.getLogger("healthsync.sync.providers")

__all__ = [
    "AppleHealthExportBridge",
    "GoogleFitProvider",
    "HealthKitBridge",
    "HealthKitProvider",
    "HealthProvider",
    "MockHealthConfig",
    "MockHealthProvider",
    "PROVIDER_REGISTRY",
    "get_provider_class",
    "select_provider",
]

# Registry: provider choice → provider class
PROVIDER_REGISTRY: dict[str, type[HealthProvider]] = {
    "healthkit": HealthKitProvider,
    "googlefit": GoogleFitProvider,
    "mock": MockHealthProvider,
}

_PLATFORM_PROVIDERS = {
    "ios": "healthkit",
    "android": "googlefit",
}


def get_provider_class(choice: str) -> type[HealthProvider]:
    """Return the provider class for a given choice slug.

    Raises:
        KeyError: If the choice is not registered.
    """
    if choice not in PROVIDER_REGISTRY:
        raise KeyError(
            f"No provider registered for '{choice}'. "
            f"Available: {list(PROVIDER_REGISTRY)}"
        )
    return PROVIDER_REGISTRY[choice]


def resolve_provider_choice(configured: str, platform: str | None = None) -> str:
    """Turn the configured choice (``auto`` or a slug) into a registry slug.

    ``auto`` follows the runtime platform: ``ios`` → HealthKit, ``android`` →
    Google Fit.  Returns an empty string for any other platform.
    """
    if configured != "auto":
        return configured
    return _PLATFORM_PROVIDERS.get(platform or sys.platform, "")


def select_provider(
    settings: "Settings",
    platform: str | None = None,
    user_id: str | None = None,
    access_token: str | None = None,
) -> HealthProvider:
    """Construct the provider for one user session from settings.

    The Google Fit token and the export file in settings belong to one
    account.  They are handed only to ``settings.health_provider_owner_id``
    (or to any caller when ``user_id`` is None); other users get a provider
    that reports itself unavailable unless they bring their own
    ``access_token``.  On a server platform under ``auto``, HealthKit in
    export mode is used when the caller owns an export file, otherwise
    Google Fit.

    Args:
        settings:     Application settings.
        platform:     Platform override; defaults to ``sys.platform``.
        user_id:      The session user, or None outside a multi-user server.
        access_token: Per-user Google Fit OAuth token.
    """
    owner = user_id is None or user_id == settings.health_provider_owner_id
    export_path = settings.apple_health_export_path if owner else ""

    choice = resolve_provider_choice(settings.health_provider, platform)
    if not choice:
        choice = "healthkit" if export_path else "googlefit"

    provider_cls = get_provider_class(choice)
    if provider_cls is HealthKitProvider:
        bridge = AppleHealthExportBridge(export_path) if export_path else None
        provider: HealthProvider = HealthKitProvider(bridge=bridge)
    elif provider_cls is GoogleFitProvider:
        provider = GoogleFitProvider(
            access_token=access_token or (settings.google_fit_access_token if owner else ""),
            timeout_s=settings.http_timeout_s,
        )
    else:
        provider = MockHealthProvider()

    logger.info(
        "Selected health provider %s for %s", provider.DISPLAY_NAME, user_id or "this process"
    )
    return provider
