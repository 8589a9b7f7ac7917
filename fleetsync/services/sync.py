"""Sync orchestration - one live polling cycle across the fleet."""

import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fleetsync.models.sync_log import SyncRun
from fleetsync.services.latest import LatestStateUpserter
from fleetsync.services.ledger import (
    CallOutcome,
    CallResult,
    RUN_FAILED,
    RUN_RUNNING,
    classify_run_status,
    record_call,
)
from fleetsync.services.mapping import MappingResolver
from fleetsync.services.provider import (
    ProviderClient,
    MAPPING_ENDPOINT,
    GPS_LATEST_ENDPOINT,
    CAN_LATEST_ENDPOINT,
    FUEL_LATEST_ENDPOINT,
)

logger = logging.getLogger(__name__)

WINDOW_MS = 5 * 60 * 1000

TRIGGERS = ("scheduled", "manual", "backfill")


class SyncAlreadyRunningError(Exception):
    """Raised when a sync run is requested while another one is still in flight."""
    pass


def compute_window_ms(now_ms: int, window_ms: int = WINDOW_MS) -> tuple[int, int]:
    """Return the (start, end) of the last complete window before `now_ms`."""
    end_ms = (now_ms // window_ms) * window_ms
    return end_ms - window_ms, end_ms


@dataclass
class RunSummary:
    """Outcome of one sync run, returned to the scheduler or manual trigger."""

    run_id: int
    trigger: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    vehicles_discovered: int = 0
    vehicles_processed: int = 0
    endpoints_called: int = 0
    records_written: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def errors_count(self) -> int:
        return len(self.errors)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["errors_count"] = self.errors_count
        return data


class SyncService:
    """Orchestrates a live sync: roster discovery, then latest GPS/CAN/fuel per vehicle."""

    def __init__(self, provider: ProviderClient, stale_after: timedelta = timedelta(minutes=30)):
        self.provider = provider
        self.stale_after = stale_after
        self.mapping = MappingResolver(provider)
        self.latest = LatestStateUpserter(provider)

    async def _expire_stale_runs(self, session: AsyncSession, now: datetime) -> None:
        """
        Close runs left `running` by a crashed process so they stop blocking new runs.

        A run is stale when its last heartbeat (or its start, before the first
        heartbeat) is older than `stale_after`. A slow but live run keeps
        heartbeating and is never expired.
        """
        last_alive = func.coalesce(SyncRun.heartbeat_at, SyncRun.started_at)
        result = await session.execute(
            update(SyncRun)
            .where(SyncRun.status == RUN_RUNNING)
            .where(last_alive < now - self.stale_after)
            .values(
                status=RUN_FAILED,
                finished_at=now,
                errors=[{"endpoint": "sync_run", "message": "Run abandoned before completion"}],
                errors_count=1,
            )
        )
        if result.rowcount:
            logger.warning(f"Marked {result.rowcount} stale sync run(s) as failed")
        await session.commit()

    async def _begin_run(self, session: AsyncSession, trigger: str) -> SyncRun:
        now = datetime.utcnow()
        await self._expire_stale_runs(session, now)

        window_start_ms, window_end_ms = compute_window_ms(int(time.time() * 1000))
        run = SyncRun(
            trigger=trigger,
            status=RUN_RUNNING,
            started_at=now,
            heartbeat_at=now,
            window_start_ms=window_start_ms,
            window_end_ms=window_end_ms,
            errors=[],
        )
        session.add(run)
        try:
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            raise SyncAlreadyRunningError("A sync run is already in progress") from e
        return run

    async def _heartbeat(self, session: AsyncSession, run_id: int) -> None:
        await session.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id)
            .where(SyncRun.status == RUN_RUNNING)
            .values(heartbeat_at=datetime.utcnow())
        )
        await session.commit()

    async def _attempt(
        self,
        session: AsyncSession,
        run_id: int,
        endpoint: str,
        vehicleno: Optional[str],
        call: Callable[[], Awaitable[CallOutcome]],
    ) -> CallResult:
        """Make one provider call and record it. Never raises for call failures."""
        result = CallResult(endpoint=endpoint, vehicleno=vehicleno)
        failed_payload = None
        try:
            result.outcome = await call()
        except Exception as e:
            await session.rollback()
            result.error = str(e) or type(e).__name__
            failed_payload = getattr(e, "payload", None)
            logger.error(f"{endpoint} failed{f' for {vehicleno}' if vehicleno else ''}: {result.error}")

        await record_call(session, run_id, result, failed_payload)
        await self._heartbeat(session, run_id)
        return result

    async def run_sync(self, session: AsyncSession, trigger: str = "scheduled") -> RunSummary:
        """
        Run one live sync cycle.

        Raises:
            SyncAlreadyRunningError: another run is in progress.
        """
        if trigger not in TRIGGERS:
            raise ValueError(f"Unknown sync trigger: {trigger}")

        run = await self._begin_run(session, trigger)
        run_id = run.id
        summary = RunSummary(run_id=run_id, trigger=trigger, status=RUN_RUNNING, started_at=run.started_at)
        logger.info(f"Sync run {run_id} started ({trigger})")

        def tally(result: CallResult) -> None:
            summary.endpoints_called += 1
            if result.ok:
                summary.records_written += result.outcome.records_written
            else:
                summary.errors.append(result.error_entry())

        # A) Roster
        mapping_result = await self._attempt(
            session, run_id, MAPPING_ENDPOINT, None,
            lambda: self.mapping.resolve(session, run_id),
        )
        tally(mapping_result)
        vehicles = mapping_result.outcome.vehicles if mapping_result.ok else []
        summary.vehicles_discovered = len(vehicles)

        # B) Latest state per vehicle
        for vehicleno in vehicles:
            for endpoint, pull in (
                (GPS_LATEST_ENDPOINT, self.latest.pull_gps),
                (CAN_LATEST_ENDPOINT, self.latest.pull_can),
                (FUEL_LATEST_ENDPOINT, self.latest.pull_fuel),
            ):
                result = await self._attempt(
                    session, run_id, endpoint, vehicleno,
                    lambda pull=pull, vehicleno=vehicleno: pull(session, run_id, vehicleno),
                )
                tally(result)
            summary.vehicles_processed += 1

        # C) Close the run
        summary.status = classify_run_status(summary.vehicles_discovered, summary.errors_count)
        summary.finished_at = datetime.utcnow()

        closed = await session.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id)
            .where(SyncRun.status == RUN_RUNNING)
            .values(
                status=summary.status,
                finished_at=summary.finished_at,
                vehicles_discovered=summary.vehicles_discovered,
                vehicles_processed=summary.vehicles_processed,
                endpoints_called=summary.endpoints_called,
                records_written=summary.records_written,
                errors_count=summary.errors_count,
                errors=list(summary.errors),
            )
        )
        await session.commit()

        if not closed.rowcount:
            # Expired as stale by another invocation; its finalized row stays as it is
            logger.warning(f"Sync run {run_id} was closed by another run before it finished; results not recorded")
            summary.status = RUN_FAILED
            summary.errors.append({"endpoint": "sync_run", "message": "Run was expired before it finished"})

        logger.info(
            f"Sync run {run_id} finished: {summary.status} "
            f"({summary.vehicles_processed}/{summary.vehicles_discovered} vehicles, "
            f"{summary.records_written} records, {summary.errors_count} errors)"
        )
        return summary
