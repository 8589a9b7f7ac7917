# Database models
from fleetsync.models.database import (
    VehicleDeviceMap,
    GpsLatest,
    CanLatest,
    FuelLatest,
    GpsHistory,
    CanHistory,
    FuelHistory,
    DistanceWindow,
)
from fleetsync.models.sync_log import SyncRun, SyncRunItem, ProviderPull
from fleetsync.models.history_job import HistoryCheckpoint, HistoryJobControl, JOB_CONTROL_ID

__all__ = [
    "VehicleDeviceMap",
    "GpsLatest",
    "CanLatest",
    "FuelLatest",
    "GpsHistory",
    "CanHistory",
    "FuelHistory",
    "DistanceWindow",
    "SyncRun",
    "SyncRunItem",
    "ProviderPull",
    "HistoryCheckpoint",
    "HistoryJobControl",
    "JOB_CONTROL_ID",
]
