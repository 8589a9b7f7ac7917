"""Historical backfill control API endpoints."""

import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from fleetsync.api.deps import get_history_controller
from fleetsync.core.database import get_db
from fleetsync.schemas.responses import (
    BatchSummaryResponse,
    HistoricalSyncStartRequest,
    HistoricalSyncStatusResponse,
    JobControlResponse,
    RunOnceRequest,
)
from fleetsync.services.history import HistoryBackfillController, InvalidJobTransitionError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/telemetry/historical-sync", tags=["historical-sync"])


@router.get("/status", response_model=HistoricalSyncStatusResponse)
async def historical_sync_status(
    db: AsyncSession = Depends(get_db),
    controller: HistoryBackfillController = Depends(get_history_controller),
):
    """Job control row, per-dataset progress and recently updated checkpoints."""
    summary = await controller.status_summary(db)
    return HistoricalSyncStatusResponse.model_validate(summary, from_attributes=True)


@router.post("/start", response_model=JobControlResponse)
async def start_historical_sync(
    request: HistoricalSyncStartRequest | None = None,
    db: AsyncSession = Depends(get_db),
    controller: HistoryBackfillController = Depends(get_history_controller),
):
    """Start the backfill, optionally changing its start time and batch size."""
    request = request or HistoricalSyncStartRequest()
    try:
        job = await controller.start(
            db,
            historical_start_ms=request.historical_start_ms,
            max_windows_per_run=request.max_windows_per_run,
        )
    except InvalidJobTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return job


@router.post("/pause", response_model=JobControlResponse)
async def pause_historical_sync(
    db: AsyncSession = Depends(get_db),
    controller: HistoryBackfillController = Depends(get_history_controller),
):
    """Pause the backfill. A batch in flight stops after its current window."""
    try:
        return await controller.pause(db)
    except InvalidJobTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/resume", response_model=JobControlResponse)
async def resume_historical_sync(
    db: AsyncSession = Depends(get_db),
    controller: HistoryBackfillController = Depends(get_history_controller),
):
    """Resume a paused backfill."""
    try:
        return await controller.resume(db)
    except InvalidJobTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post("/run-once", response_model=BatchSummaryResponse)
async def run_historical_sync_once(
    request: RunOnceRequest | None = None,
    db: AsyncSession = Depends(get_db),
    controller: HistoryBackfillController = Depends(get_history_controller),
):
    """Run a single backfill batch now, whatever the job status."""
    vehicleno = request.vehicleno if request else None
    logger.info(f"Manual backfill batch requested{f' for {vehicleno}' if vehicleno else ''}")
    return await controller.run_once(db, vehicleno=vehicleno)
