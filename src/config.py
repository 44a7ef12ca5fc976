"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "HealthHub Sync"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    database_url: str  # postgres connection string for asyncpg
    db_pool_min_size: int = 2
    db_pool_max_size: int = 20

    # --- Clerk ---
    clerk_jwks_url: str = "https://api.clerk.com/v1/jwks"

    # --- Fitbit OAuth ---
    fitbit_client_id: str
    fitbit_client_secret: str
    fitbit_redirect_uri: str
    fitbit_scopes: list[str] = [
        "activity",
        "heartrate",
        "sleep",
        "oxygen_saturation",
        "respiratory_rate",
        "temperature",
        "weight",
        "profile",
    ]
    # Where the browser lands after the OAuth callback
    fitbit_status_page_url: str = "http://localhost:3000/settings/data-sync"

    # --- Sync engine ---
    sync_default_lookback_days: int = 14
    sync_interval_hours: int = 24  # auto-sync skips when the last sync is newer
    sync_max_concurrent_fetches: int = 10
    sync_fetch_retry_attempts: int = 3
    sync_fetch_timeout_seconds: float = 30.0
    token_refresh_buffer_seconds: int = 300

    # --- Cron batch ---
    cron_secret: str | None = None  # unset means every cron call is rejected
    cron_inactivity_threshold_days: int = 10
    cron_max_batch_size: int = 20
    cron_pacing_seconds: float = 2.0

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
