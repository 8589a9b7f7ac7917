"""Tests for the historical backfill controller."""

import pytest
from datetime import datetime
from unittest.mock import patch

from sqlalchemy import select, func
from sqlalchemy.exc import OperationalError

from fleetsync.models import (
    VehicleDeviceMap,
    GpsHistory,
    CanHistory,
    FuelHistory,
    DistanceWindow,
    HistoryCheckpoint,
    HistoryJobControl,
    JOB_CONTROL_ID,
)
from fleetsync.services.history import (
    DATASETS,
    HistoryBackfillController,
    InvalidJobTransitionError,
)
from fleetsync.services.provider import ProviderError

from factories import envelope, HISTORY_START_MS, WINDOW_MS

# Ten complete windows after the historical start, plus a partial one
NOW_MS = HISTORY_START_MS + 10 * WINDOW_MS + 1234
GLOBAL_END_MS = HISTORY_START_MS + 10 * WINDOW_MS


def make_controller(provider, max_windows=48, now_ms=NOW_MS) -> HistoryBackfillController:
    return HistoryBackfillController(
        provider,
        default_start_ms=HISTORY_START_MS,
        default_max_windows=max_windows,
        window_ms=WINDOW_MS,
        lease_ms=15 * 60 * 1000,
        clock=lambda: now_ms,
    )


async def add_vehicle(session, vehicleno="KA01", active=True):
    now = datetime.utcnow()
    session.add(VehicleDeviceMap(
        vehicleno=vehicleno,
        deviceno=f"DEV-{vehicleno}",
        active=active,
        first_seen_at=now,
        last_seen_at=now,
    ))
    await session.commit()


async def checkpoints(session) -> dict[tuple[str, str], int]:
    result = await session.execute(select(HistoryCheckpoint).execution_options(populate_existing=True))
    return {(cp.vehicleno, cp.dataset): cp.last_synced_end_ms for cp in result.scalars().all()}


async def job_row(session) -> HistoryJobControl:
    result = await session.execute(
        select(HistoryJobControl)
        .where(HistoryJobControl.id == JOB_CONTROL_ID)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def count(session, model_class) -> int:
    return await session.scalar(select(func.count()).select_from(model_class))


def gps_points(vehicleno, start_ms, end_ms):
    """Two GPS points inside the requested window."""
    return envelope([
        {"commtime": start_ms + 1000, "lat": "12.9", "lng": "77.5"},
        {"commtime": start_ms + 61000, "lat": "12.91", "lng": "77.51"},
    ])


class TestJobControl:

    @pytest.mark.asyncio
    async def test_job_created_idle_with_defaults(self, async_session, provider):
        job = await make_controller(provider).ensure_job(async_session)
        assert job.status == "idle"
        assert job.historical_start_ms == HISTORY_START_MS
        assert job.max_windows_per_run == 48

    @pytest.mark.asyncio
    async def test_start_pause_resume(self, async_session, provider):
        controller = make_controller(provider)

        job = await controller.start(async_session, max_windows_per_run=10)
        assert job.status == "running"
        assert job.max_windows_per_run == 10

        assert (await controller.pause(async_session)).status == "paused"
        assert (await controller.pause(async_session)).status == "paused"
        assert (await controller.resume(async_session)).status == "running"
        assert (await controller.resume(async_session)).status == "running"

    @pytest.mark.asyncio
    async def test_pause_or_resume_while_idle_rejected(self, async_session, provider):
        controller = make_controller(provider)
        with pytest.raises(InvalidJobTransitionError):
            await controller.pause(async_session)
        with pytest.raises(InvalidJobTransitionError):
            await controller.resume(async_session)
        assert (await job_row(async_session)).status == "idle"

    @pytest.mark.asyncio
    async def test_start_rejects_zero_batch_size(self, async_session, provider):
        with pytest.raises(ValueError):
            await make_controller(provider).start(async_session, max_windows_per_run=0)


class TestScheduledBatch:

    @pytest.mark.asyncio
    async def test_skipped_unless_running(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider)

        summary = await controller.run_scheduled_batch(async_session)
        assert summary.status == "skipped"
        provider.get_gps_history.assert_not_awaited()

        await controller.start(async_session)
        await controller.pause(async_session)
        summary = await controller.run_scheduled_batch(async_session)
        assert summary.status == "skipped"

    @pytest.mark.asyncio
    async def test_batch_bounded_by_max_windows(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider)
        await controller.start(async_session)

        summary = await controller.run_scheduled_batch(async_session)

        assert summary.status == "success"
        assert summary.windows_processed == 48
        assert summary.global_end_ms == GLOBAL_END_MS
        # Datasets are walked in order; the last one gets the remaining 8 windows
        assert await checkpoints(async_session) == {
            ("KA01", "gps"): GLOBAL_END_MS,
            ("KA01", "can"): GLOBAL_END_MS,
            ("KA01", "fuel_pct"): GLOBAL_END_MS,
            ("KA01", "fuel_litres"): GLOBAL_END_MS,
            ("KA01", "distance"): HISTORY_START_MS + 8 * WINDOW_MS,
        }
        assert await count(async_session, DistanceWindow) == 8

        summary = await controller.run_scheduled_batch(async_session)
        assert summary.windows_processed == 2
        assert (await checkpoints(async_session))[("KA01", "distance")] == GLOBAL_END_MS

    @pytest.mark.asyncio
    async def test_never_fetches_past_global_end(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=1000)
        await controller.start(async_session)

        summary = await controller.run_scheduled_batch(async_session)
        assert summary.windows_processed == 10 * len(DATASETS)

        for call in provider.get_gps_history.await_args_list:
            vehicleno, start_ms, end_ms = call.args
            assert end_ms - start_ms == WINDOW_MS
            assert end_ms <= GLOBAL_END_MS

        summary = await controller.run_scheduled_batch(async_session)
        assert summary.windows_processed == 0

    @pytest.mark.asyncio
    async def test_fuel_datasets_request_their_unit(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=1000)
        await controller.start(async_session)
        provider.get_fuel_history.side_effect = lambda vno, in_litres, s, e: envelope([
            {"time": s + 1000, "value": "24.5" if in_litres else "61"},
        ])

        await controller.run_scheduled_batch(async_session)

        litres = await async_session.scalar(
            select(func.count()).select_from(FuelHistory).where(FuelHistory.in_litres.is_(True))
        )
        pct = await async_session.scalar(
            select(func.count()).select_from(FuelHistory).where(FuelHistory.in_litres.is_(False))
        )
        assert litres == 10
        assert pct == 10

    @pytest.mark.asyncio
    async def test_inactive_vehicles_skipped(self, async_session, provider):
        await add_vehicle(async_session, "KA01")
        await add_vehicle(async_session, "KA99", active=False)
        controller = make_controller(provider, max_windows=1000)
        await controller.start(async_session)

        await controller.run_scheduled_batch(async_session)

        assert {v for v, _ in (await checkpoints(async_session))} == {"KA01"}

    @pytest.mark.asyncio
    async def test_pause_stops_after_current_window(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider)
        await controller.start(async_session)

        async def pause_during_fetch(vehicleno, start_ms, end_ms):
            await controller.pause(async_session)
            return gps_points(vehicleno, start_ms, end_ms)

        provider.get_gps_history.side_effect = pause_during_fetch

        summary = await controller.run_scheduled_batch(async_session)

        assert summary.stopped_by_pause is True
        assert summary.windows_processed == 1
        assert await checkpoints(async_session) == {("KA01", "gps"): HISTORY_START_MS + WINDOW_MS}
        assert await count(async_session, GpsHistory) == 2
        assert (await job_row(async_session)).status == "paused"


class TestWindowFailures:

    @pytest.mark.asyncio
    async def test_failed_window_does_not_advance_checkpoint(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=1000)
        await controller.start(async_session)
        failing_start = HISTORY_START_MS + 3 * WINDOW_MS

        def gps(vehicleno, start_ms, end_ms):
            if start_ms == failing_start:
                raise ProviderError("upstream timeout")
            return gps_points(vehicleno, start_ms, end_ms)

        provider.get_gps_history.side_effect = gps

        summary = await controller.run_scheduled_batch(async_session)

        assert summary.status == "partial"
        assert summary.windows_failed == 1
        assert summary.failures[0]["dataset"] == "gps"
        assert summary.failures[0]["start_ms"] == failing_start
        assert summary.failures[0]["message"] == "upstream timeout"

        cps = await checkpoints(async_session)
        assert cps[("KA01", "gps")] == failing_start
        # Other datasets carry on
        assert cps[("KA01", "can")] == GLOBAL_END_MS
        assert await count(async_session, GpsHistory) == 6

        # The next batch retries from the failed window
        provider.get_gps_history.side_effect = gps_points
        summary = await controller.run_scheduled_batch(async_session)
        assert summary.windows_processed == 7
        assert (await checkpoints(async_session))[("KA01", "gps")] == GLOBAL_END_MS

    @pytest.mark.asyncio
    async def test_provider_failure_status_fails_window(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=1000)
        provider.get_battery_metrics_history.return_value = envelope(status="FAILURE", msg="rate limited")

        summary = await controller.run_once(async_session)

        assert summary.windows_failed == 1
        assert ("KA01", "can") not in await checkpoints(async_session)

    @pytest.mark.asyncio
    async def test_unreadable_distance_fails_window(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=1000)
        provider.get_distance_travelled.return_value = envelope({"distance": "NA"})

        summary = await controller.run_once(async_session)

        assert summary.status == "partial"
        assert summary.windows_failed == 1
        assert summary.failures[0]["dataset"] == "distance"
        assert summary.failures[0]["start_ms"] == HISTORY_START_MS
        assert ("KA01", "distance") not in await checkpoints(async_session)
        assert await count(async_session, DistanceWindow) == 0

        provider.get_distance_travelled.return_value = envelope({"distance": "0.4"})
        await controller.run_once(async_session)

        assert (await checkpoints(async_session))[("KA01", "distance")] == GLOBAL_END_MS
        assert await count(async_session, DistanceWindow) == 10

    @pytest.mark.asyncio
    async def test_checkpoint_write_failure_rolls_back_window(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=1000)
        provider.get_gps_history.side_effect = gps_points
        failing_start = HISTORY_START_MS + 2 * WINDOW_MS
        advance = controller._advance_checkpoint

        async def advance_or_fail(session, vehicleno, dataset, end_ms):
            if dataset == "gps" and end_ms == failing_start + WINDOW_MS:
                raise OperationalError("INSERT INTO history_checkpoints", {}, Exception("database is locked"))
            await advance(session, vehicleno, dataset, end_ms)

        with patch.object(controller, "_advance_checkpoint", advance_or_fail):
            summary = await controller.run_once(async_session)

        assert summary.windows_failed == 1
        assert summary.failures[0]["start_ms"] == failing_start
        assert "database is locked" in summary.failures[0]["message"]

        # Rows of the failed window were rolled back with it
        assert await count(async_session, GpsHistory) == 4
        later_rows = await async_session.scalar(
            select(func.count()).select_from(GpsHistory).where(GpsHistory.commtime_ms > failing_start)
        )
        assert later_rows == 0
        assert (await checkpoints(async_session))[("KA01", "gps")] == failing_start

        summary = await controller.run_once(async_session)

        assert summary.windows_failed == 0
        assert await count(async_session, GpsHistory) == 20
        assert (await checkpoints(async_session))[("KA01", "gps")] == GLOBAL_END_MS

    @pytest.mark.asyncio
    async def test_failed_window_counts_toward_budget(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=1)
        provider.get_gps_history.side_effect = ProviderError("boom")

        summary = await controller.run_once(async_session)

        assert summary.windows_failed == 1
        assert summary.windows_processed == 0
        assert provider.get_battery_metrics_history.await_count == 0


class TestIdempotence:

    @pytest.mark.asyncio
    async def test_replaying_a_window_inserts_nothing_new(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider)
        provider.get_gps_history.side_effect = gps_points

        first = await controller.sync_window(async_session, "KA01", "gps", HISTORY_START_MS, HISTORY_START_MS + WINDOW_MS)
        await async_session.commit()
        second = await controller.sync_window(async_session, "KA01", "gps", HISTORY_START_MS, HISTORY_START_MS + WINDOW_MS)
        await async_session.commit()

        assert first == 2
        assert second == 0
        assert await count(async_session, GpsHistory) == 2

    @pytest.mark.asyncio
    async def test_replayed_can_and_distance_windows(self, async_session, provider):
        controller = make_controller(provider)
        provider.get_battery_metrics_history.return_value = envelope([{"time": HISTORY_START_MS + 5, "soc": "70"}])
        provider.get_distance_travelled.return_value = envelope([{"distance": "1.25"}])

        for _ in range(2):
            await controller.sync_window(async_session, "KA01", "can", HISTORY_START_MS, HISTORY_START_MS + WINDOW_MS)
            await controller.sync_window(async_session, "KA01", "distance", HISTORY_START_MS, HISTORY_START_MS + WINDOW_MS)
            await async_session.commit()

        assert await count(async_session, CanHistory) == 1
        distance = (await async_session.execute(select(DistanceWindow))).scalar_one()
        assert distance.distance == 1.25

    @pytest.mark.asyncio
    async def test_checkpoint_never_moves_backwards(self, async_session, provider):
        controller = make_controller(provider)
        later = HISTORY_START_MS + 5 * WINDOW_MS

        await controller._advance_checkpoint(async_session, "KA01", "gps", later)
        await async_session.commit()
        await controller._advance_checkpoint(async_session, "KA01", "gps", HISTORY_START_MS + WINDOW_MS)
        await async_session.commit()

        assert await checkpoints(async_session) == {("KA01", "gps"): later}


class TestRunOnce:

    @pytest.mark.asyncio
    async def test_runs_while_paused_without_changing_status(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=5)
        await controller.start(async_session)
        await controller.pause(async_session)

        summary = await controller.run_once(async_session)

        assert summary.windows_processed == 5
        job = await job_row(async_session)
        assert job.status == "paused"
        assert job.last_heartbeat_at is not None
        assert job.lease_expires_ms is None
        assert job.last_batch["windows_processed"] == 5

    @pytest.mark.asyncio
    async def test_single_vehicle(self, async_session, provider):
        await add_vehicle(async_session, "KA01")
        await add_vehicle(async_session, "KA02")
        controller = make_controller(provider, max_windows=1000)

        await controller.run_once(async_session, vehicleno="KA02")

        assert {v for v, _ in (await checkpoints(async_session))} == {"KA02"}


class TestLease:

    @pytest.mark.asyncio
    async def test_held_lease_skips_batch(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider)
        job = await controller.ensure_job(async_session)
        job.lease_expires_ms = NOW_MS + 60_000
        await async_session.commit()

        summary = await controller.run_once(async_session)

        assert summary.status == "skipped"
        provider.get_gps_history.assert_not_awaited()
        assert (await job_row(async_session)).lease_expires_ms == NOW_MS + 60_000

    @pytest.mark.asyncio
    async def test_expired_lease_is_taken_over(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=2)
        job = await controller.ensure_job(async_session)
        job.lease_expires_ms = NOW_MS - 1
        await async_session.commit()

        summary = await controller.run_once(async_session)

        assert summary.windows_processed == 2
        assert (await job_row(async_session)).lease_expires_ms is None


class TestStartPoint:

    @pytest.mark.asyncio
    async def test_checkpoint_before_historical_start_is_ignored(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=1)
        async_session.add(HistoryCheckpoint(
            vehicleno="KA01",
            dataset="gps",
            last_synced_end_ms=HISTORY_START_MS - 50 * WINDOW_MS,
            updated_at=datetime.utcnow(),
        ))
        await async_session.commit()

        await controller.run_once(async_session)

        _, start_ms, end_ms = provider.get_gps_history.await_args.args
        assert start_ms == HISTORY_START_MS

    @pytest.mark.asyncio
    async def test_start_with_later_historical_start(self, async_session, provider):
        await add_vehicle(async_session)
        controller = make_controller(provider, max_windows=1)
        later_start = HISTORY_START_MS + 6 * WINDOW_MS

        await controller.start(async_session, historical_start_ms=later_start)
        await controller.run_scheduled_batch(async_session)

        _, start_ms, _ = provider.get_gps_history.await_args.args
        assert start_ms == later_start


class TestStatusSummary:

    @pytest.mark.asyncio
    async def test_progress_without_checkpoints_measures_from_start(self, async_session, provider):
        status = await make_controller(provider).status_summary(async_session)

        assert status["job_control"].status == "idle"
        assert status["global_end_ms"] == GLOBAL_END_MS
        gps = status["progress"]["gps"]
        assert gps["total_vehicles"] == 0
        assert gps["min"] is None
        assert gps["lag_ms"] == GLOBAL_END_MS - HISTORY_START_MS
        assert status["recent_checkpoints"] == []

    @pytest.mark.asyncio
    async def test_progress_after_batch(self, async_session, provider):
        await add_vehicle(async_session, "KA01")
        await add_vehicle(async_session, "KA02")
        controller = make_controller(provider, max_windows=48)
        await controller.run_once(async_session)

        status = await controller.status_summary(async_session)

        gps = status["progress"]["gps"]
        assert gps["total_vehicles"] == 1
        assert gps["complete_vehicles"] == 1
        assert gps["lag_ms"] == 0
        distance = status["progress"]["distance"]
        assert distance["max"] == HISTORY_START_MS + 8 * WINDOW_MS
        assert distance["lag_ms"] == 2 * WINDOW_MS
        assert len(status["recent_checkpoints"]) == 5
