from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    db_path: str = "data/tripsync.db"

    # Bikeshare API
    api_base_url: str = "http://localhost:3000/api/citibike"
    api_access_token: str = ""
    api_timeout_seconds: float = 30.0
    user_id: str = ""

    # Cache TTLs per resource kind
    profile_ttl_seconds: int = 3600
    rewards_ttl_seconds: int = 300  # changes often
    subscriptions_ttl_seconds: int = 3600
    sync_retry_seconds: int = 60

    # Trip history pagination
    trip_sync_max_pages: int = 100

    # Trip details backfill
    details_rate_limit_ms: int = 500
    details_batch_size: int = 1
    details_max_backoff_ms: int = 10_000
    details_rate_limit_strikes: int = 3

    # Decoded geometry cache budget
    geometry_cache_mb: float = 10

    # Optional settings
    sync_interval_minutes: int = 15
    scheduler_enabled: bool = True
    fetch_trip_details: bool = True
    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
