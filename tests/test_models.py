"""Tests for ORM model constraints.

Verifies UniqueConstraints and the single-running-run index raise
IntegrityError on duplicate inserts, ensuring data integrity is enforced at
the DB level.
"""

import pytest
from datetime import datetime
from sqlalchemy.exc import IntegrityError

from fleetsync.models import (
    GpsHistory,
    CanHistory,
    FuelHistory,
    DistanceWindow,
    HistoryCheckpoint,
    SyncRun,
)


class TestHistoryConstraints:

    @pytest.mark.asyncio
    async def test_duplicate_gps_point_raises(self, async_session):
        """(vehicleno, commtime_ms) must be unique."""
        async_session.add(GpsHistory(vehicleno="KA01", commtime_ms=1000, lat=1.0, lng=2.0))
        await async_session.commit()

        async_session.add(GpsHistory(vehicleno="KA01", commtime_ms=1000, lat=1.5, lng=2.5))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_same_time_different_vehicle_allowed(self, async_session):
        async_session.add(CanHistory(vehicleno="KA01", time_ms=1000, soc=50.0))
        async_session.add(CanHistory(vehicleno="KA02", time_ms=1000, soc=60.0))
        await async_session.commit()

    @pytest.mark.asyncio
    async def test_fuel_units_are_separate_keys(self, async_session):
        """The same instant may carry both a percentage and a litres reading."""
        async_session.add(FuelHistory(vehicleno="KA01", time_ms=1000, in_litres=False, value=40.0))
        async_session.add(FuelHistory(vehicleno="KA01", time_ms=1000, in_litres=True, value=24.0))
        await async_session.commit()

        async_session.add(FuelHistory(vehicleno="KA01", time_ms=1000, in_litres=True, value=25.0))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_duplicate_distance_window_raises(self, async_session):
        async_session.add(DistanceWindow(vehicleno="KA01", start_ms=0, end_ms=300000, distance=1.2))
        await async_session.commit()

        async_session.add(DistanceWindow(vehicleno="KA01", start_ms=0, end_ms=300000, distance=1.3))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_checkpoint_primary_key(self, async_session):
        now = datetime(2025, 9, 2, 12, 0)
        async_session.add(HistoryCheckpoint(vehicleno="KA01", dataset="gps", last_synced_end_ms=1, updated_at=now))
        async_session.add(HistoryCheckpoint(vehicleno="KA01", dataset="can", last_synced_end_ms=1, updated_at=now))
        await async_session.commit()


class TestSyncRunConstraints:

    @pytest.mark.asyncio
    async def test_only_one_running_run(self, async_session):
        async_session.add(SyncRun(trigger="scheduled", status="running", started_at=datetime(2025, 9, 2)))
        await async_session.commit()

        async_session.add(SyncRun(trigger="manual", status="running", started_at=datetime(2025, 9, 2)))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_finished_runs_do_not_conflict(self, async_session):
        for status in ("success", "success", "partial", "failed", "running"):
            async_session.add(SyncRun(trigger="scheduled", status=status, started_at=datetime(2025, 9, 2)))
        await async_session.commit()
