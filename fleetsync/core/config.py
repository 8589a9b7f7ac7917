from datetime import datetime, timezone
from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    db_path: str = "/data/fleet_telemetry.db"

    # Telematics provider
    provider_base_url: str = "https://apiplatform.intellicar.in"
    provider_username: str = ""
    provider_password: str = ""
    provider_timeout_seconds: float = 30.0

    # Live sync
    sync_interval_minutes: int = 5
    sync_run_stale_minutes: int = 30

    # Historical backfill
    history_interval_minutes: int = 10
    history_start: datetime = datetime(2025, 9, 1, tzinfo=timezone.utc)
    history_window_minutes: int = 5
    history_max_windows_per_run: int = 48
    history_lease_seconds: int = 900

    # Optional settings
    scheduler_enabled: bool = True
    log_level: str = "INFO"
    debug: bool = False

    @property
    def history_start_ms(self) -> int:
        start = self.history_start
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        return int(start.timestamp() * 1000)

    @property
    def history_window_ms(self) -> int:
        return self.history_window_minutes * 60 * 1000


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
