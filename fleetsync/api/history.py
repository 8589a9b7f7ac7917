"""History read and export API endpoints."""

import json
import logging
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncSession

from fleetsync.api.deps import get_provider
from fleetsync.core.database import get_db
from fleetsync.schemas.responses import HistoryResponse, HistoryMeta
from fleetsync.services import parsers
from fleetsync.services.history_query import (
    EXPORT_MAX_ROWS,
    fetch_history,
    fetch_all_history,
    rows_to_csv,
)
from fleetsync.services.provider import ProviderClient, ProviderError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/telemetry", tags=["history"])

DATASET_PATTERN = "^(gps|can|fuel_pct|fuel_litres|distance)$"


def _check_range(start_ms: int, end_ms: int) -> None:
    if start_ms > end_ms:
        raise HTTPException(status_code=422, detail="start_ms must be before or equal to end_ms")


def _download(rows: list[dict], filename: str, format: str) -> Response:
    """Build a file download response in the requested format."""
    if format == "json":
        return Response(
            content=json.dumps(rows, default=str),
            media_type="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}.json"'},
        )
    return Response(
        content=rows_to_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}.csv"'},
    )


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    vehicleno: str,
    start_ms: int,
    end_ms: int,
    dataset: str = Query("all", pattern="^(all|gps|can|fuel_pct|fuel_litres|distance)$"),
    limit: int = Query(100, ge=1, le=5000),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
):
    """
    Stored history for a vehicle, newest first.

    Args:
        vehicleno: Vehicle registration number
        start_ms: Range start (epoch ms, inclusive)
        end_ms: Range end (epoch ms, inclusive)
        dataset: One dataset, or "all" to page every dataset independently
        limit: Page size
        offset: Rows to skip
    """
    _check_range(start_ms, end_ms)

    if dataset == "all":
        data = await fetch_all_history(db, vehicleno, start_ms, end_ms, limit, offset)
    else:
        data = {dataset: await fetch_history(db, vehicleno, dataset, start_ms, end_ms, limit, offset)}

    return HistoryResponse(
        data=data,
        meta=HistoryMeta(
            vehicleno=vehicleno,
            dataset=dataset,
            start_ms=start_ms,
            end_ms=end_ms,
            limit=limit,
            offset=offset,
            returned=sum(len(rows) for rows in data.values()),
        ),
    )


@router.get("/export")
async def export_history(
    vehicleno: str,
    start_ms: int,
    end_ms: int,
    dataset: str = Query(..., pattern=DATASET_PATTERN),
    format: str = Query("csv", pattern="^(csv|json)$"),
    db: AsyncSession = Depends(get_db),
):
    """Download stored history for one dataset as CSV or JSON (raw payloads omitted)."""
    _check_range(start_ms, end_ms)

    rows = await fetch_history(
        db, vehicleno, dataset, start_ms, end_ms,
        limit=EXPORT_MAX_ROWS, include_raw=False,
    )
    return _download(rows, f"fleet_{dataset}_{vehicleno}_{start_ms}_{end_ms}", format)


@router.get("/export/provider")
async def export_from_provider(
    vehicleno: str,
    start_ms: int,
    end_ms: int,
    dataset: str = Query(..., pattern="^(gps|can|distance)$"),
    format: str = Query("csv", pattern="^(csv|json)$"),
    provider: ProviderClient = Depends(get_provider),
):
    """Fetch a range directly from the provider and download it without storing it."""
    if start_ms >= end_ms:
        raise HTTPException(status_code=422, detail="start_ms must be before end_ms")

    try:
        if dataset == "gps":
            envelope = await provider.get_gps_history(vehicleno, start_ms, end_ms)
        elif dataset == "can":
            envelope = await provider.get_battery_metrics_history(vehicleno, start_ms, end_ms)
        else:
            envelope = await provider.get_distance_travelled(vehicleno, start_ms, end_ms)
    except ProviderError as e:
        logger.error(f"Provider export failed for {vehicleno} {dataset}: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    if not envelope.ok:
        raise HTTPException(status_code=502, detail=envelope.message or "Provider returned failure")

    if dataset == "distance":
        rows = parsers.flatten_distance_rows(envelope.data)
    else:
        rows = [r for r in envelope.data if isinstance(r, dict)] if isinstance(envelope.data, list) else []

    return _download(rows, f"fleet_provider_{dataset}_{vehicleno}_{start_ms}_{end_ms}", format)
