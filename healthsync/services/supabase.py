"""Supabase Postgres access with RLS identity.

Every call runs in a transaction where ``request.jwt.claims`` and the
``authenticated`` role are set with ``set_config(..., true)``, so
``auth.uid()`` inside the health RPC functions resolves to the caller and
Row-Level Security policies see the correct identity.

Uses ``asyncpg`` directly: the RPC functions are ``SECURITY INVOKER`` and
must run as the end user, not the service role.
"""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import asyncpg

from healthsync.config import Settings, get_settings

logger = logging.getLogger("healthsync.db")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool. Call once at app startup."""
    global _pool
    s = settings or get_settings()
    _pool = await asyncpg.create_pool(
        s.supabase_db_url,
        min_size=s.db_pool_min_size,
        max_size=s.db_pool_max_size,
        command_timeout=s.db_command_timeout_s,
    )
    logger.info(
        "Database pool initialized (min=%d, max=%d)",
        s.db_pool_min_size, s.db_pool_max_size,
    )
    return _pool


async def close_pool() -> None:
    """Drain the pool. Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized; call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    user_id: str | None = None,
    pool: asyncpg.Pool | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection with the caller's identity applied.

    Usage::

        async with get_connection(user_id=auth.user_id) as conn:
            log_id = await conn.fetchval("SELECT public.start_health_sync($1, $2)", ...)

    The settings are transaction-local, so they disappear when the
    connection is returned to the pool.
    """
    pool = pool or get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if user_id:
                claims = json.dumps({"sub": str(user_id), "role": "authenticated"})
                await conn.execute(
                    "SELECT set_config('request.jwt.claims', $1, true), "
                    "set_config('role', 'authenticated', true)",
                    claims,
                )
            yield conn

