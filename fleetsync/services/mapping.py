"""Fleet roster discovery."""

import logging
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.dialects.sqlite import insert
from sqlalchemy.ext.asyncio import AsyncSession

from fleetsync.models.database import VehicleDeviceMap
from fleetsync.services import parsers
from fleetsync.services.ledger import CallOutcome
from fleetsync.services.provider import ProviderClient, ProviderResponseError

logger = logging.getLogger(__name__)


class MappingResolver:
    """Fetches the vehicle-to-device roster and keeps vehicle_device_map in step with it."""

    def __init__(self, provider: ProviderClient):
        self.provider = provider

    async def resolve(self, session: AsyncSession, run_id: int) -> CallOutcome:
        """
        Fetch the roster once and upsert every vehicle in it.

        Vehicles missing from a non-empty roster are deactivated, never deleted.

        Returns:
            CallOutcome whose `vehicles` lists the vehicle numbers to sync.

        Raises:
            ProviderError: the roster could not be fetched or was malformed.
        """
        envelope = await self.provider.list_vehicle_device_mapping()
        data = envelope.unwrap("Vehicle mapping")
        try:
            entries = parsers.parse_mapping(data)
        except parsers.MalformedPayloadError as e:
            raise ProviderResponseError(str(e), payload=envelope.raw) from e

        now = datetime.utcnow()
        for entry in entries:
            stmt = insert(VehicleDeviceMap).values(
                vehicleno=entry["vehicleno"],
                deviceno=entry["deviceno"],
                active=True,
                first_seen_at=now,
                last_seen_at=now,
                last_sync_run_id=run_id,
                raw=entry["raw"],
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["vehicleno"],
                set_={
                    "deviceno": stmt.excluded.deviceno,
                    "active": True,
                    "last_seen_at": stmt.excluded.last_seen_at,
                    "last_sync_run_id": stmt.excluded.last_sync_run_id,
                    "raw": stmt.excluded.raw,
                },
            )
            await session.execute(stmt)

        vehicles = [entry["vehicleno"] for entry in entries]
        if vehicles:
            retired = await session.execute(
                update(VehicleDeviceMap)
                .where(VehicleDeviceMap.vehicleno.not_in(vehicles))
                .where(VehicleDeviceMap.active.is_(True))
                .values(active=False)
                .execution_options(synchronize_session=False)
            )
            if retired.rowcount:
                logger.info(f"Deactivated {retired.rowcount} vehicles missing from the roster")

        await session.commit()
        logger.info(f"Roster resolved: {len(vehicles)} vehicles")

        return CallOutcome(payload=envelope.raw, records_written=len(vehicles), vehicles=vehicles)
