from datetime import datetime
from fastapi import APIRouter
from pydantic import BaseModel

from fleetsync.core.config import get_settings

router = APIRouter(prefix="/api", tags=["config"])


class HealthResponse(BaseModel):
    status: str
    version: str


class ConfigResponse(BaseModel):
    db_path: str
    provider_base_url: str
    provider_credentials_set: bool
    provider_timeout_seconds: float
    sync_interval_minutes: int
    sync_run_stale_minutes: int
    history_interval_minutes: int
    history_start: datetime
    history_window_minutes: int
    history_max_windows_per_run: int
    scheduler_enabled: bool
    debug: bool


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version="0.1.0")


@router.get("/config", response_model=ConfigResponse)
async def get_config() -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    settings = get_settings()
    return ConfigResponse(
        db_path=settings.db_path,
        provider_base_url=settings.provider_base_url,
        provider_credentials_set=bool(settings.provider_username and settings.provider_password),
        provider_timeout_seconds=settings.provider_timeout_seconds,
        sync_interval_minutes=settings.sync_interval_minutes,
        sync_run_stale_minutes=settings.sync_run_stale_minutes,
        history_interval_minutes=settings.history_interval_minutes,
        history_start=settings.history_start,
        history_window_minutes=settings.history_window_minutes,
        history_max_windows_per_run=settings.history_max_windows_per_run,
        scheduler_enabled=settings.scheduler_enabled,
        debug=settings.debug,
    )
