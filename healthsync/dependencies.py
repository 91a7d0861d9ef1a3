"""Shared FastAPI dependencies injected into route handlers.

This module is the composition root for HTTP requests: it decides which
provider and backend a session gets.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request

from healthsync.config import Settings, get_settings
from healthsync.sync.backends import InMemoryHealthBackend, InMemoryStore, SupabaseBackend
from healthsync.sync.backends.base import HealthBackend
from healthsync.sync.providers import GoogleFitProvider, select_provider
from healthsync.sync.providers.base import HealthProvider
from healthsync.sync.service import HealthService, build_health_service


@dataclass(frozen=True)
class AuthContext:
    """Authenticated user context extracted from the Supabase JWT."""

    user_id: str  # Supabase auth user id (JWT "sub")
    email: str | None = None
    role: str | None = None
    session_id: str | None = None


async def get_current_user(request: Request) -> AuthContext:
    """Extract the authenticated user from the request state.

    The Supabase auth middleware sets ``request.state.auth`` before routes run.
    """
    auth: AuthContext | None = getattr(request.state, "auth", None)
    if auth is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return auth


# Annotated shortcuts for route signatures
CurrentUser = Annotated[AuthContext, Depends(get_current_user)]
AppSettings = Annotated[Settings, Depends(get_settings)]


# ---------- Health sync composition ----------

# One provider and one service per user.  Services are kept so each user's
# passes share one lock; the least recently used idle ones are dropped once
# the cache outgrows settings.health_service_cache_size.
_memory_store = InMemoryStore()
_services: OrderedDict[str, HealthService] = OrderedDict()


async def get_health_provider(
    user: CurrentUser,
    settings: AppSettings,
    x_google_fit_token: Annotated[str | None, Header()] = None,
) -> HealthProvider:
    """The session user's provider, with their own Google Fit token if sent."""
    service = _services.get(user.user_id)
    if service is None:
        return select_provider(
            settings, user_id=user.user_id, access_token=x_google_fit_token
        )
    provider = service.provider
    if x_google_fit_token and isinstance(provider, GoogleFitProvider):
        provider.set_access_token(x_google_fit_token)
    return provider


def _build_backend(settings: Settings, user_id: str) -> HealthBackend:
    if settings.health_backend == "memory":
        return InMemoryHealthBackend(user_id=user_id, store=_memory_store)
    return SupabaseBackend(user_id=user_id)


def _evict_idle_services(max_size: int) -> None:
    for user_id in list(_services)[:-1]:
        if len(_services) <= max_size:
            return
        if _services[user_id].is_idle:
            del _services[user_id]


async def get_health_service(
    user: CurrentUser,
    settings: AppSettings,
    provider: Annotated[HealthProvider, Depends(get_health_provider)],
) -> HealthService:
    # Runs on the event loop, so lookup and insert cannot interleave.
    service = _services.get(user.user_id)
    if service is None:
        service = build_health_service(provider, _build_backend(settings, user.user_id))
        _services[user.user_id] = service
        _evict_idle_services(settings.health_service_cache_size)
    else:
        _services.move_to_end(user.user_id)
    return service


async def drain_health_services() -> None:
    """Await detached initial syncs so shutdown never cuts one off."""
    for service in list(_services.values()):
        await service.wait_for_background_tasks()


def reset_health_services() -> None:
    """Drop cached services and in-memory data (settings reload, tests)."""
    _services.clear()
    _memory_store.connections.clear()
    _memory_store.sync_logs.clear()
    _memory_store.activities.clear()
    _memory_store.goals.clear()


HealthServiceDep = Annotated[HealthService, Depends(get_health_service)]
