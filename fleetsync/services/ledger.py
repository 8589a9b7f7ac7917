"""Run ledger: per-call item log, provider pull audit log and run status rollup."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fleetsync.models.sync_log import SyncRunItem, ProviderPull

logger = logging.getLogger(__name__)

RUN_RUNNING = "running"
RUN_SUCCESS = "success"
RUN_PARTIAL = "partial"
RUN_FAILED = "failed"


@dataclass
class CallOutcome:
    """What a successful provider call produced."""

    payload: Any = None
    records_written: int = 0
    vehicles: list[str] = field(default_factory=list)


@dataclass
class CallResult:
    """Result of one attempted provider call: either an outcome or an error message."""

    endpoint: str
    vehicleno: Optional[str] = None
    outcome: Optional[CallOutcome] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def error_entry(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"endpoint": self.endpoint, "message": self.error}
        if self.vehicleno:
            entry["vehicleno"] = self.vehicleno
        return entry


def classify_run_status(vehicles_discovered: int, errors_count: int) -> str:
    """
    Final status of a sync run.

    No vehicles means nothing was synced, whether the roster was unreachable or
    empty, so the run is failed. Otherwise any error makes it partial.
    """
    if vehicles_discovered == 0:
        return RUN_FAILED
    if errors_count > 0:
        return RUN_PARTIAL
    return RUN_SUCCESS


async def record_call(
    session: AsyncSession,
    run_id: int,
    result: CallResult,
    failed_payload: Any = None,
) -> None:
    """
    Write the run item and pull audit entries for one call and commit them.

    Audit failures are logged and rolled back; the business write they describe
    has already been committed by the caller.
    """
    status = "success" if result.ok else "failed"
    payload = result.outcome.payload if result.outcome else failed_payload
    now = datetime.utcnow()

    try:
        session.add(SyncRunItem(
            sync_run_id=run_id,
            endpoint=result.endpoint,
            vehicleno=result.vehicleno,
            status=status,
            created_at=now,
            payload=payload,
            error=result.error,
        ))
        session.add(ProviderPull(
            endpoint=result.endpoint,
            vehicleno=result.vehicleno,
            status=status,
            payload=payload,
            error=result.error,
            pulled_at=now,
        ))
        await session.commit()
    except Exception as e:
        logger.error(f"Failed to write audit log for {result.endpoint} ({result.vehicleno or '-'}): {e}")
        await session.rollback()


async def record_pull(
    session: AsyncSession,
    endpoint: str,
    status: str,
    payload: Any = None,
    error: Optional[str] = None,
    vehicleno: Optional[str] = None,
) -> ProviderPull:
    """Write one pull audit row for a call made outside a sync run."""
    pull = ProviderPull(
        endpoint=endpoint,
        vehicleno=vehicleno,
        status=status,
        payload=payload,
        error=error,
        pulled_at=datetime.utcnow(),
    )
    session.add(pull)
    await session.commit()
    return pull
