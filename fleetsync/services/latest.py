"""Latest-state pulls: one row per vehicle per dataset, overwritten in place."""

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import func
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from fleetsync.models.database import GpsLatest, CanLatest, FuelLatest
from fleetsync.services import parsers
from fleetsync.services.ledger import CallOutcome
from fleetsync.services.provider import ProviderClient, ProviderEnvelope, ProviderResponseError

logger = logging.getLogger(__name__)


class LatestStateUpserter:
    """Pulls the latest GPS, CAN and fuel snapshots for a vehicle."""

    def __init__(self, provider: ProviderClient):
        self.provider = provider

    async def _upsert(
        self,
        session: AsyncSession,
        model_class,
        envelope: ProviderEnvelope,
        context: str,
        parse_fn: Callable[[Any], dict[str, Any]],
        time_column: str,
        run_id: int,
    ) -> CallOutcome:
        """
        Upsert one latest-state row keyed by vehicleno.

        The row is only overwritten when the incoming reading is at least as new
        as the stored one, so an out-of-order response never moves it backwards.
        """
        data = envelope.unwrap(context)
        try:
            row = parse_fn(data)
        except parsers.MalformedPayloadError as e:
            raise ProviderResponseError(str(e), payload=envelope.raw) from e

        row["updated_at"] = datetime.utcnow()
        row["last_sync_run_id"] = run_id

        table = model_class.__table__
        stmt = insert(table).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=["vehicleno"],
            set_={k: getattr(stmt.excluded, k) for k in row if k != "vehicleno"},
            where=func.coalesce(table.c[time_column], 0) <= func.coalesce(stmt.excluded[time_column], 0),
        )
        result = await session.execute(stmt)
        await session.commit()

        written = 1 if result.rowcount else 0
        if not written:
            logger.info(f"{context} for {row['vehicleno']} is older than the stored reading; kept the stored one")
        return CallOutcome(payload=envelope.raw, records_written=written)

    async def pull_gps(self, session: AsyncSession, run_id: int, vehicleno: str) -> CallOutcome:
        envelope = await self.provider.get_last_gps_status(vehicleno)
        return await self._upsert(
            session, GpsLatest, envelope, "GPS latest",
            lambda d: parsers.parse_gps_latest(d, vehicleno), "commtime_ms", run_id,
        )

    async def pull_can(self, session: AsyncSession, run_id: int, vehicleno: str) -> CallOutcome:
        envelope = await self.provider.get_latest_can(vehicleno)
        return await self._upsert(
            session, CanLatest, envelope, "CAN latest",
            lambda d: parsers.parse_can_latest(d, vehicleno), "reading_ms", run_id,
        )

    async def pull_fuel(self, session: AsyncSession, run_id: int, vehicleno: str) -> CallOutcome:
        envelope = await self.provider.get_last_fuel_status(vehicleno)
        return await self._upsert(
            session, FuelLatest, envelope, "Fuel latest",
            lambda d: parsers.parse_fuel_latest(d, vehicleno), "fueltime_ms", run_id,
        )
