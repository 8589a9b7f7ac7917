"""Time-bounded reads over the history tables."""

import csv
import io
import json
from datetime import datetime
from typing import Any

from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession

from fleetsync.models.database import GpsHistory, CanHistory, FuelHistory, DistanceWindow
from fleetsync.services.history import DATASETS
from fleetsync.services.provider import to_dec_str

EXPORT_MAX_ROWS = 50000


def _dataset_query(dataset: str, vehicleno: str, start_ms: int, end_ms: int):
    """Build the newest-first select for one dataset."""
    if dataset == "gps":
        return (
            select(GpsHistory)
            .where(GpsHistory.vehicleno == vehicleno)
            .where(GpsHistory.commtime_ms >= start_ms)
            .where(GpsHistory.commtime_ms <= end_ms)
            .order_by(desc(GpsHistory.commtime_ms))
        )
    if dataset == "can":
        return (
            select(CanHistory)
            .where(CanHistory.vehicleno == vehicleno)
            .where(CanHistory.time_ms >= start_ms)
            .where(CanHistory.time_ms <= end_ms)
            .order_by(desc(CanHistory.time_ms))
        )
    if dataset in ("fuel_pct", "fuel_litres"):
        return (
            select(FuelHistory)
            .where(FuelHistory.vehicleno == vehicleno)
            .where(FuelHistory.in_litres.is_(dataset == "fuel_litres"))
            .where(FuelHistory.time_ms >= start_ms)
            .where(FuelHistory.time_ms <= end_ms)
            .order_by(desc(FuelHistory.time_ms))
        )
    if dataset == "distance":
        # Windows overlapping the requested range
        return (
            select(DistanceWindow)
            .where(DistanceWindow.vehicleno == vehicleno)
            .where(DistanceWindow.start_ms <= end_ms)
            .where(DistanceWindow.end_ms >= start_ms)
            .order_by(desc(DistanceWindow.start_ms))
        )
    raise ValueError(f"Unknown history dataset: {dataset}")


def row_to_dict(obj, include_raw: bool = True) -> dict[str, Any]:
    """Convert a model instance to a column dict."""
    return {
        c.name: getattr(obj, c.name)
        for c in obj.__table__.columns
        if include_raw or c.name != "raw"
    }


async def fetch_history(
    session: AsyncSession,
    vehicleno: str,
    dataset: str,
    start_ms: int,
    end_ms: int,
    limit: int = 100,
    offset: int = 0,
    include_raw: bool = True,
) -> list[dict[str, Any]]:
    """Rows for one dataset in [start_ms, end_ms], newest first."""
    query = _dataset_query(dataset, vehicleno, start_ms, end_ms).limit(limit).offset(offset)
    result = await session.execute(query)
    return [row_to_dict(obj, include_raw) for obj in result.scalars().all()]


async def fetch_all_history(
    session: AsyncSession,
    vehicleno: str,
    start_ms: int,
    end_ms: int,
    limit: int = 100,
    offset: int = 0,
) -> dict[str, list[dict[str, Any]]]:
    """Rows for every dataset, each paged independently."""
    return {
        dataset: await fetch_history(session, vehicleno, dataset, start_ms, end_ms, limit, offset)
        for dataset in DATASETS
    }


def _csv_cell(value: Any) -> Any:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    if isinstance(value, float):
        return to_dec_str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (dict, list)):
        return json.dumps(value, separators=(",", ":"), default=str)
    return value


def rows_to_csv(rows: list[dict[str, Any]]) -> str:
    """Render rows as CSV. Columns are the union of row keys in first-seen order."""
    columns: list[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    if not columns:
        return ""

    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=columns, extrasaction='ignore')
    writer.writeheader()
    for row in rows:
        writer.writerow({k: _csv_cell(row.get(k)) for k in columns})
    return output.getvalue()
