"""Historical backfill - resumable, pausable, window-by-window history ingestion."""

import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy import select, update, or_
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from fleetsync.models.database import (
    VehicleDeviceMap,
    GpsHistory,
    CanHistory,
    FuelHistory,
    DistanceWindow,
)
from fleetsync.models.history_job import HistoryCheckpoint, HistoryJobControl, JOB_CONTROL_ID
from fleetsync.services import parsers
from fleetsync.services.provider import ProviderClient

logger = logging.getLogger(__name__)

DATASETS = ("gps", "can", "fuel_pct", "fuel_litres", "distance")

JOB_IDLE = "idle"
JOB_RUNNING = "running"
JOB_PAUSED = "paused"

# Which states each operator action may be applied from
_ALLOWED_FROM = {
    "start": {JOB_IDLE, JOB_RUNNING, JOB_PAUSED},
    "pause": {JOB_RUNNING, JOB_PAUSED},
    "resume": {JOB_PAUSED, JOB_RUNNING},
}


class InvalidJobTransitionError(Exception):
    """Raised when an operator action does not apply to the job's current status."""
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class BatchSummary:
    """Outcome of one backfill batch."""

    status: str  # "success", "partial", "skipped"
    reason: Optional[str] = None
    windows_processed: int = 0
    windows_failed: int = 0
    rows_inserted: int = 0
    stopped_by_pause: bool = False
    global_end_ms: Optional[int] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failures: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        for key in ("started_at", "finished_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class HistoryBackfillController:
    """
    Drives the backfill job.

    The job control row (id=1) holds status and configuration and doubles as a
    lease: a batch claims it with a conditional update, so only one batch runs
    at a time even across processes. Pausing is cooperative; a scheduled batch
    re-reads the status before each window.
    """

    def __init__(
        self,
        provider: ProviderClient,
        default_start_ms: int,
        default_max_windows: int = 48,
        window_ms: int = 5 * 60 * 1000,
        lease_ms: int = 15 * 60 * 1000,
        clock: Callable[[], int] = _now_ms,
    ):
        self.provider = provider
        self.default_start_ms = default_start_ms
        self.default_max_windows = default_max_windows
        self.window_ms = window_ms
        self.lease_ms = lease_ms
        self.clock = clock

    @classmethod
    def from_settings(cls, provider: ProviderClient, settings) -> "HistoryBackfillController":
        return cls(
            provider,
            default_start_ms=settings.history_start_ms,
            default_max_windows=settings.history_max_windows_per_run,
            window_ms=settings.history_window_ms,
            lease_ms=settings.history_lease_seconds * 1000,
        )

    def global_end_ms(self) -> int:
        """End of the last complete window; backfill never fetches past it."""
        now = self.clock()
        return (now // self.window_ms) * self.window_ms

    # --- Job control -----------------------------------------------------

    async def ensure_job(self, session: AsyncSession) -> HistoryJobControl:
        """Load the job control row, creating it with defaults on first use."""
        result = await session.execute(
            select(HistoryJobControl)
            .where(HistoryJobControl.id == JOB_CONTROL_ID)
            .execution_options(populate_existing=True)
        )
        job = result.scalar_one_or_none()
        if job is None:
            job = HistoryJobControl(
                id=JOB_CONTROL_ID,
                status=JOB_IDLE,
                historical_start_ms=self.default_start_ms,
                max_windows_per_run=self.default_max_windows,
                updated_at=datetime.utcnow(),
            )
            session.add(job)
            await session.commit()
        return job

    async def _transition(
        self, session: AsyncSession, action: str, status: str, **changes: Any
    ) -> HistoryJobControl:
        job = await self.ensure_job(session)
        if job.status not in _ALLOWED_FROM[action]:
            raise InvalidJobTransitionError(f"Cannot {action} backfill while it is {job.status}")
        for key, value in changes.items():
            setattr(job, key, value)
        job.status = status
        job.updated_at = datetime.utcnow()
        await session.commit()
        logger.info(f"Backfill job {action}: now {status}")
        return job

    async def start(
        self,
        session: AsyncSession,
        historical_start_ms: Optional[int] = None,
        max_windows_per_run: Optional[int] = None,
    ) -> HistoryJobControl:
        """Set the job running, optionally changing where it starts and its batch size."""
        changes: dict[str, Any] = {}
        if historical_start_ms is not None:
            changes["historical_start_ms"] = historical_start_ms
        if max_windows_per_run is not None:
            if max_windows_per_run < 1:
                raise ValueError("max_windows_per_run must be at least 1")
            changes["max_windows_per_run"] = max_windows_per_run
        return await self._transition(session, "start", JOB_RUNNING, **changes)

    async def pause(self, session: AsyncSession) -> HistoryJobControl:
        return await self._transition(session, "pause", JOB_PAUSED)

    async def resume(self, session: AsyncSession) -> HistoryJobControl:
        return await self._transition(session, "resume", JOB_RUNNING)

    async def _current_status(self, session: AsyncSession) -> Optional[str]:
        result = await session.execute(
            select(HistoryJobControl.status).where(HistoryJobControl.id == JOB_CONTROL_ID)
        )
        return result.scalar_one_or_none()

    # --- Lease -----------------------------------------------------------

    async def _acquire_lease(self, session: AsyncSession) -> bool:
        now = self.clock()
        result = await session.execute(
            update(HistoryJobControl)
            .where(HistoryJobControl.id == JOB_CONTROL_ID)
            .where(or_(
                HistoryJobControl.lease_expires_ms.is_(None),
                HistoryJobControl.lease_expires_ms < now,
            ))
            .values(lease_expires_ms=now + self.lease_ms, last_heartbeat_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount == 1

    async def _heartbeat(self, session: AsyncSession) -> None:
        """Extend the lease. Runs inside the window's transaction."""
        await session.execute(
            update(HistoryJobControl)
            .where(HistoryJobControl.id == JOB_CONTROL_ID)
            .values(lease_expires_ms=self.clock() + self.lease_ms, last_heartbeat_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )

    async def _release_lease(self, session: AsyncSession, summary: BatchSummary) -> None:
        await session.execute(
            update(HistoryJobControl)
            .where(HistoryJobControl.id == JOB_CONTROL_ID)
            .values(
                lease_expires_ms=None,
                last_heartbeat_at=datetime.utcnow(),
                last_batch=summary.to_dict(),
            )
            .execution_options(synchronize_session=False)
        )
        await session.commit()

    # --- Windows ---------------------------------------------------------

    async def _insert_rows(self, session: AsyncSession, model_class, rows: list[dict], keys: list[str]) -> int:
        """Insert history rows, ignoring any whose unique key already exists."""
        if not rows:
            return 0
        stmt = insert(model_class.__table__).values(rows).on_conflict_do_nothing(index_elements=keys)
        result = await session.execute(stmt)
        return max(result.rowcount or 0, 0)

    async def sync_window(
        self, session: AsyncSession, vehicleno: str, dataset: str, start_ms: int, end_ms: int
    ) -> int:
        """
        Fetch one dataset window from the provider and insert it into history.

        Does not commit. Returns the number of new rows.

        Raises:
            ProviderError: the provider call failed or reported failure.
        """
        if dataset == "gps":
            envelope = await self.provider.get_gps_history(vehicleno, start_ms, end_ms)
            rows = parsers.parse_gps_history(envelope.unwrap("GPS history"), vehicleno)
            return await self._insert_rows(session, GpsHistory, rows, ["vehicleno", "commtime_ms"])

        if dataset == "can":
            envelope = await self.provider.get_battery_metrics_history(vehicleno, start_ms, end_ms)
            rows = parsers.parse_can_history(envelope.unwrap("CAN history"), vehicleno)
            return await self._insert_rows(session, CanHistory, rows, ["vehicleno", "time_ms"])

        if dataset in ("fuel_pct", "fuel_litres"):
            in_litres = dataset == "fuel_litres"
            envelope = await self.provider.get_fuel_history(vehicleno, in_litres, start_ms, end_ms)
            rows = parsers.parse_fuel_history(envelope.unwrap("Fuel history"), vehicleno, in_litres)
            return await self._insert_rows(session, FuelHistory, rows, ["vehicleno", "time_ms", "in_litres"])

        if dataset == "distance":
            envelope = await self.provider.get_distance_travelled(vehicleno, start_ms, end_ms)
            data = envelope.unwrap("Distance")
            distance = parsers.parse_distance(data)
            if distance is None:
                raise parsers.MalformedPayloadError(f"Distance: no readable distance in {data!r}")
            row = {
                "vehicleno": vehicleno,
                "start_ms": start_ms,
                "end_ms": end_ms,
                "distance": distance,
                "raw": data if isinstance(data, (dict, list)) else {"distance": data},
            }
            return await self._insert_rows(session, DistanceWindow, [row], ["vehicleno", "start_ms", "end_ms"])

        raise ValueError(f"Unknown history dataset: {dataset}")

    async def _advance_checkpoint(self, session: AsyncSession, vehicleno: str, dataset: str, end_ms: int) -> None:
        """Move the checkpoint forward to `end_ms`. It never moves backwards."""
        stmt = insert(HistoryCheckpoint).values(
            vehicleno=vehicleno,
            dataset=dataset,
            last_synced_end_ms=end_ms,
            updated_at=datetime.utcnow(),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["vehicleno", "dataset"],
            set_={
                "last_synced_end_ms": stmt.excluded.last_synced_end_ms,
                "updated_at": stmt.excluded.updated_at,
            },
            where=HistoryCheckpoint.__table__.c.last_synced_end_ms < stmt.excluded.last_synced_end_ms,
        )
        await session.execute(stmt)

    async def _load_checkpoints(self, session: AsyncSession) -> dict[tuple[str, str], int]:
        result = await session.execute(
            select(HistoryCheckpoint.vehicleno, HistoryCheckpoint.dataset, HistoryCheckpoint.last_synced_end_ms)
        )
        return {(row[0], row[1]): row[2] for row in result.all()}

    # --- Batches ---------------------------------------------------------

    async def run_scheduled_batch(self, session: AsyncSession) -> BatchSummary:
        """Run a batch if the job is running; otherwise skip."""
        job = await self.ensure_job(session)
        if job.status != JOB_RUNNING:
            logger.info(f"Backfill batch skipped: job is {job.status}")
            return BatchSummary(status="skipped", reason=f"Job is {job.status}")
        return await self._run_batch(session, job, honour_pause=True)

    async def run_once(self, session: AsyncSession, vehicleno: Optional[str] = None) -> BatchSummary:
        """Run exactly one batch regardless of the job status. Does not change the status."""
        job = await self.ensure_job(session)
        return await self._run_batch(session, job, honour_pause=False, vehicleno=vehicleno)

    async def _run_batch(
        self,
        session: AsyncSession,
        job: HistoryJobControl,
        honour_pause: bool,
        vehicleno: Optional[str] = None,
    ) -> BatchSummary:
        summary = BatchSummary(status="success", started_at=datetime.utcnow())

        if not await self._acquire_lease(session):
            logger.warning("Backfill batch skipped: another batch holds the lease")
            summary.status = "skipped"
            summary.reason = "Another batch is in progress"
            summary.finished_at = datetime.utcnow()
            return summary

        max_windows = job.max_windows_per_run
        start_floor = job.historical_start_ms
        global_end = self.global_end_ms()
        summary.global_end_ms = global_end

        try:
            query = select(VehicleDeviceMap.vehicleno).order_by(VehicleDeviceMap.vehicleno)
            if vehicleno:
                query = query.where(VehicleDeviceMap.vehicleno == vehicleno)
            else:
                query = query.where(VehicleDeviceMap.active.is_(True))
            vehicles = list((await session.execute(query)).scalars().all())
            checkpoints = await self._load_checkpoints(session)

            logger.info(
                f"Backfill batch started: {len(vehicles)} vehicles, up to {max_windows} windows, "
                f"end {global_end}"
            )

            attempted = 0
            for vno in vehicles:
                for dataset in DATASETS:
                    if attempted >= max_windows or summary.stopped_by_pause:
                        break

                    cursor = max(checkpoints.get((vno, dataset), start_floor), start_floor)
                    while cursor + self.window_ms <= global_end and attempted < max_windows:
                        if honour_pause and await self._current_status(session) != JOB_RUNNING:
                            logger.info("Backfill batch stopping: job is no longer running")
                            summary.stopped_by_pause = True
                            break

                        window_end = cursor + self.window_ms
                        attempted += 1
                        try:
                            inserted = await self.sync_window(session, vno, dataset, cursor, window_end)
                            await self._advance_checkpoint(session, vno, dataset, window_end)
                            await self._heartbeat(session)
                            await session.commit()
                        except Exception as e:
                            await session.rollback()
                            summary.windows_failed += 1
                            summary.failures.append({
                                "vehicleno": vno,
                                "dataset": dataset,
                                "start_ms": cursor,
                                "end_ms": window_end,
                                "message": str(e) or type(e).__name__,
                            })
                            logger.error(f"Backfill window failed for {vno} {dataset} [{cursor}-{window_end}]: {e}")
                            # Retried from the same checkpoint on the next batch
                            break

                        summary.windows_processed += 1
                        summary.rows_inserted += inserted
                        cursor = window_end

                if attempted >= max_windows or summary.stopped_by_pause:
                    break

            if summary.windows_failed:
                summary.status = "partial"
        finally:
            summary.finished_at = datetime.utcnow()
            await self._release_lease(session, summary)

        logger.info(
            f"Backfill batch finished: {summary.windows_processed} windows, "
            f"{summary.rows_inserted} rows, {summary.windows_failed} failed"
        )
        return summary

    # --- Status ----------------------------------------------------------

    async def status_summary(self, session: AsyncSession, recent_limit: int = 20) -> dict[str, Any]:
        """Job control row, per-dataset progress and the most recently updated checkpoints."""
        job = await self.ensure_job(session)
        global_end = self.global_end_ms()

        result = await session.execute(select(HistoryCheckpoint))
        checkpoints = result.scalars().all()

        progress: dict[str, dict[str, Any]] = {}
        for dataset in DATASETS:
            progress[dataset] = {
                "min": None,
                "max": None,
                "lag_ms": None,
                "complete_vehicles": 0,
                "total_vehicles": 0,
            }

        for cp in checkpoints:
            ds = progress.get(cp.dataset)
            if ds is None:
                continue
            end_ms = cp.last_synced_end_ms
            ds["total_vehicles"] += 1
            if ds["min"] is None or end_ms < ds["min"]:
                ds["min"] = end_ms
            if ds["max"] is None or end_ms > ds["max"]:
                ds["max"] = end_ms
            if end_ms >= global_end:
                ds["complete_vehicles"] += 1

        for dataset in DATASETS:
            ds = progress[dataset]
            reference = ds["min"] if ds["min"] is not None else job.historical_start_ms
            ds["lag_ms"] = max(global_end - reference, 0)

        recent = sorted(checkpoints, key=lambda cp: cp.updated_at, reverse=True)[:recent_limit]

        return {
            "job_control": job,
            "global_end_ms": global_end,
            "progress": progress,
            "recent_checkpoints": recent,
        }
