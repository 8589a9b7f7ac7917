"""Live sync API endpoints: overview, manual trigger, run ledger, roster and raw pulls."""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc, func

from fleetsync.api.deps import get_provider, get_sync_service
from fleetsync.core.database import get_db
from fleetsync.models.database import VehicleDeviceMap, GpsLatest, CanLatest, FuelLatest
from fleetsync.models.sync_log import SyncRun, SyncRunItem
from fleetsync.schemas.responses import (
    OverviewResponse,
    OverviewPreviews,
    TableStats,
    RunSummaryResponse,
    SyncRunResponse,
    SyncRunItemResponse,
    SyncRunDetailResponse,
    VehicleResponse,
    GpsLatestResponse,
    CanLatestResponse,
    FuelLatestResponse,
    ProviderPullRequest,
    ProviderPullResponse,
)
from fleetsync.services.ledger import record_pull
from fleetsync.services.provider import ProviderClient, ProviderError
from fleetsync.services.sync import SyncService, SyncAlreadyRunningError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/telemetry", tags=["telemetry"])

PREVIEW_ROWS = 10


async def _table_stats(db: AsyncSession, model_class, latest_column) -> TableStats:
    result = await db.execute(select(func.count(), func.max(latest_column)).select_from(model_class))
    count, latest = result.one()
    return TableStats(row_count=count or 0, latest_at=latest)


async def _preview(db: AsyncSession, model_class, order_column) -> list:
    result = await db.execute(select(model_class).order_by(desc(order_column)).limit(PREVIEW_ROWS))
    return list(result.scalars().all())


@router.get("/overview", response_model=OverviewResponse)
async def overview(db: AsyncSession = Depends(get_db)):
    """Last run, per-table stats and previews of the roster and latest-state tables."""
    result = await db.execute(select(SyncRun).order_by(desc(SyncRun.started_at)).limit(1))
    last_run = result.scalar_one_or_none()

    table_stats = {
        "mapping": await _table_stats(db, VehicleDeviceMap, VehicleDeviceMap.last_seen_at),
        "gps_latest": await _table_stats(db, GpsLatest, GpsLatest.updated_at),
        "can_latest": await _table_stats(db, CanLatest, CanLatest.updated_at),
        "fuel_latest": await _table_stats(db, FuelLatest, FuelLatest.updated_at),
    }

    mapping = await _preview(db, VehicleDeviceMap, VehicleDeviceMap.last_seen_at)
    gps = await _preview(db, GpsLatest, GpsLatest.updated_at)
    can = await _preview(db, CanLatest, CanLatest.updated_at)
    fuel = await _preview(db, FuelLatest, FuelLatest.updated_at)

    previews = OverviewPreviews(
        mapping=[VehicleResponse.model_validate(r) for r in mapping],
        gps_latest=[GpsLatestResponse.model_validate(r) for r in gps],
        can_latest=[CanLatestResponse.model_validate(r) for r in can],
        fuel_latest=[FuelLatestResponse.model_validate(r) for r in fuel],
    )

    return OverviewResponse(
        last_run=SyncRunResponse.model_validate(last_run) if last_run else None,
        table_stats=table_stats,
        previews=previews,
    )


@router.post("/trigger-sync", response_model=RunSummaryResponse)
async def trigger_sync(
    db: AsyncSession = Depends(get_db),
    sync_service: SyncService = Depends(get_sync_service),
):
    """Run a live sync now and wait for it to finish."""
    try:
        summary = await sync_service.run_sync(db, trigger="manual")
    except SyncAlreadyRunningError as e:
        logger.warning(f"Manual sync rejected: {e}")
        raise HTTPException(status_code=409, detail=str(e))

    return RunSummaryResponse.model_validate(summary)


@router.get("/runs", response_model=list[SyncRunResponse])
async def list_runs(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Most recent sync runs, newest first."""
    result = await db.execute(select(SyncRun).order_by(desc(SyncRun.started_at)).limit(limit))
    return result.scalars().all()


@router.get("/runs/{run_id}", response_model=SyncRunDetailResponse)
async def get_run(run_id: int, db: AsyncSession = Depends(get_db)):
    """One sync run with the calls it made."""
    run = await db.get(SyncRun, run_id)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Sync run {run_id} not found")

    result = await db.execute(
        select(SyncRunItem)
        .where(SyncRunItem.sync_run_id == run_id)
        .order_by(SyncRunItem.id)
    )
    items = result.scalars().all()

    return SyncRunDetailResponse(
        run=SyncRunResponse.model_validate(run),
        items=[SyncRunItemResponse.model_validate(i) for i in items],
    )


@router.get("/vehicles", response_model=list[VehicleResponse])
async def list_vehicles(
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
):
    """Vehicle/device roster."""
    query = select(VehicleDeviceMap).order_by(VehicleDeviceMap.vehicleno)
    if not include_inactive:
        query = query.where(VehicleDeviceMap.active.is_(True))
    result = await db.execute(query)
    return result.scalars().all()


@router.post("/pull", response_model=ProviderPullResponse)
async def pull_from_provider(
    request: ProviderPullRequest,
    db: AsyncSession = Depends(get_db),
    provider: ProviderClient = Depends(get_provider),
):
    """
    Call one provider endpoint directly and keep the response in the pull audit log.

    Failures are logged too and answered with 502; the detail carries the pull id
    so the stored payload can be looked up.
    """
    body = request.body or {}
    vehicleno = body.get("vehicleno")
    vehicleno = str(vehicleno) if vehicleno is not None else None

    try:
        envelope = await provider.post(request.endpoint, body)
        data = envelope.unwrap(request.endpoint)
    except ProviderError as e:
        pull = await record_pull(
            db, request.endpoint, "failed", payload=e.payload, error=str(e), vehicleno=vehicleno
        )
        logger.error(f"Manual pull {pull.id} of {request.endpoint} failed: {e}")
        raise HTTPException(status_code=502, detail={"message": str(e), "pull_id": pull.id})

    pull = await record_pull(db, request.endpoint, "success", payload=envelope.raw, vehicleno=vehicleno)
    logger.info(f"Manual pull {pull.id} of {request.endpoint} stored")
    return ProviderPullResponse(pull_id=pull.id, endpoint=request.endpoint, status="success", data=data)
