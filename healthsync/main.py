"""healthsync API: FastAPI application entry point.

Run locally:
    uvicorn healthsync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from healthsync.config import Settings, get_settings
from healthsync.dependencies import drain_health_services, reset_health_services
from healthsync.middleware.supabase_auth import SupabaseAuthMiddleware
from healthsync.routers import health, health_sync
from healthsync.services.supabase import close_pool, init_pool
from healthsync.sync.config_loader import get_sync_config

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("healthsync")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting healthsync API v%s [%s, backend=%s]",
        settings.app_version,
        settings.environment,
        settings.health_backend,
    )
    get_sync_config()  # fail fast on a broken sync_config.yaml
    if settings.health_backend == "supabase":
        await init_pool(settings)
    yield
    await drain_health_services()
    if settings.health_backend == "supabase":
        await close_pool()
    reset_health_services()
    logger.info("healthsync API shut down")


# ---------- App factory ----------

def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="healthsync API",
        description=(
            "Health data synchronization from device health stores to "
            "deduplicated, goal-attributed activity records."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ---------- Middleware (the last one added runs first) ----------

    # Supabase JWT authentication
    app.add_middleware(SupabaseAuthMiddleware, settings=settings)

    # CORS is added last so preflight is answered before auth runs
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ---------- Health check (outside the v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(health_sync.router, prefix="/api/v1")

    return app


app = create_app()
