"""Application configuration loaded from environment variables."""

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file).

    Engine tuning (lookbacks, batch size, provider type maps) lives in
    ``healthsync/sync/sync_config.yaml`` instead.
    """

    # --- App ---
    app_name: str = "healthsync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Supabase ---
    supabase_url: str = ""
    supabase_db_url: str = ""  # direct postgres connection string for asyncpg
    supabase_jwt_secret: str = ""  # HS256 secret for Supabase-issued access tokens
    supabase_jwt_audience: str = "authenticated"

    # --- Database pool ---
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20
    db_command_timeout_s: float = 30.0

    # --- Health sync ---
    health_backend: Literal["supabase", "memory"] = "supabase"
    health_provider: Literal["auto", "healthkit", "googlefit", "mock"] = "auto"
    google_fit_access_token: str = ""
    apple_health_export_path: str = ""
    health_provider_owner_id: str = ""  # user id that owns the token and export above
    health_service_cache_size: int = 1000
    http_timeout_s: float = 30.0

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
