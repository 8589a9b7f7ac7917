"""Shared FastAPI dependencies."""

from datetime import timedelta
from typing import AsyncGenerator

from fastapi import Depends

from fleetsync.core.config import get_settings
from fleetsync.services.history import HistoryBackfillController
from fleetsync.services.provider import ProviderClient
from fleetsync.services.sync import SyncService


async def get_provider() -> AsyncGenerator[ProviderClient, None]:
    """Provider client for one request, closed afterwards."""
    provider = ProviderClient.from_settings(get_settings())
    try:
        yield provider
    finally:
        await provider.close()


def get_sync_service(provider: ProviderClient = Depends(get_provider)) -> SyncService:
    settings = get_settings()
    return SyncService(provider, stale_after=timedelta(minutes=settings.sync_run_stale_minutes))


def get_history_controller(provider: ProviderClient = Depends(get_provider)) -> HistoryBackfillController:
    return HistoryBackfillController.from_settings(provider, get_settings())
