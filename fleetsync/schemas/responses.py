"""Pydantic response models for API endpoints."""

from datetime import datetime
from pydantic import BaseModel, field_validator
from typing import Any


class SyncRunResponse(BaseModel):
    """Sync run ledger entry."""
    id: int
    trigger: str
    status: str
    started_at: datetime
    finished_at: datetime | None
    heartbeat_at: datetime | None = None
    window_start_ms: int | None
    window_end_ms: int | None
    vehicles_discovered: int
    vehicles_processed: int
    endpoints_called: int
    records_written: int
    errors_count: int
    errors: list[dict[str, Any]] | None

    class Config:
        from_attributes = True


class SyncRunItemResponse(BaseModel):
    """One external call made during a run."""
    id: int
    endpoint: str
    vehicleno: str | None
    status: str
    created_at: datetime
    error: str | None

    class Config:
        from_attributes = True


class SyncRunDetailResponse(BaseModel):
    run: SyncRunResponse
    items: list[SyncRunItemResponse]


class RunSummaryResponse(BaseModel):
    """Result of a triggered sync run."""
    run_id: int
    trigger: str
    status: str
    started_at: datetime
    finished_at: datetime | None
    vehicles_discovered: int
    vehicles_processed: int
    endpoints_called: int
    records_written: int
    errors_count: int
    errors: list[dict[str, Any]]

    class Config:
        from_attributes = True


class VehicleResponse(BaseModel):
    """Roster entry."""
    vehicleno: str
    deviceno: str
    active: bool
    first_seen_at: datetime
    last_seen_at: datetime
    last_sync_run_id: int | None

    class Config:
        from_attributes = True


class GpsLatestResponse(BaseModel):
    vehicleno: str
    commtime_ms: int
    lat: float
    lng: float
    alti: float | None
    devbattery: float | None
    vehbattery: float | None
    speed: float | None
    heading: float | None
    ignstatus: int | None
    mobili: int | None
    dout_1: int | None
    dout_2: int | None
    updated_at: datetime

    class Config:
        from_attributes = True


class CanLatestResponse(BaseModel):
    vehicleno: str
    reading_ms: int | None
    soc_value: float | None
    soc_ts_ms: int | None
    battery_temp_value: float | None
    battery_temp_ts_ms: int | None
    battery_voltage_value: float | None
    battery_voltage_ts_ms: int | None
    current_value: float | None
    current_ts_ms: int | None
    updated_at: datetime

    class Config:
        from_attributes = True


class FuelLatestResponse(BaseModel):
    vehicleno: str
    fueltime_ms: int
    fuellevel_pct: float | None
    fuellevel_litres: float | None
    updated_at: datetime

    class Config:
        from_attributes = True


class TableStats(BaseModel):
    """Row count and most recent write time for one table."""
    row_count: int
    latest_at: datetime | None


class OverviewPreviews(BaseModel):
    mapping: list[VehicleResponse]
    gps_latest: list[GpsLatestResponse]
    can_latest: list[CanLatestResponse]
    fuel_latest: list[FuelLatestResponse]


class OverviewResponse(BaseModel):
    """Dashboard overview: last run, table stats and previews."""
    last_run: SyncRunResponse | None
    table_stats: dict[str, TableStats]
    previews: OverviewPreviews


class HistoryMeta(BaseModel):
    vehicleno: str
    dataset: str
    start_ms: int
    end_ms: int
    limit: int
    offset: int
    returned: int


class HistoryResponse(BaseModel):
    """History rows, keyed by dataset."""
    data: dict[str, list[dict[str, Any]]]
    meta: HistoryMeta


class JobControlResponse(BaseModel):
    """Backfill job control row."""
    status: str
    historical_start_ms: int
    max_windows_per_run: int
    last_heartbeat_at: datetime | None
    lease_expires_ms: int | None
    last_batch: dict[str, Any] | None
    updated_at: datetime

    class Config:
        from_attributes = True


class CheckpointResponse(BaseModel):
    vehicleno: str
    dataset: str
    last_synced_end_ms: int
    updated_at: datetime

    class Config:
        from_attributes = True


class DatasetProgress(BaseModel):
    """Backfill progress across vehicles for one dataset."""
    min: int | None
    max: int | None
    lag_ms: int | None
    complete_vehicles: int
    total_vehicles: int


class HistoricalSyncStatusResponse(BaseModel):
    job_control: JobControlResponse
    global_end_ms: int
    progress: dict[str, DatasetProgress]
    recent_checkpoints: list[CheckpointResponse]


class BatchSummaryResponse(BaseModel):
    """Outcome of one backfill batch."""
    status: str
    reason: str | None = None
    windows_processed: int
    windows_failed: int
    rows_inserted: int
    stopped_by_pause: bool
    global_end_ms: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    failures: list[dict[str, Any]] = []

    class Config:
        from_attributes = True


class HistoricalSyncStartRequest(BaseModel):
    historical_start_ms: int | None = None
    max_windows_per_run: int | None = None

    @field_validator("max_windows_per_run")
    @classmethod
    def validate_max_windows(cls, v):
        if v is not None and (v < 1 or v > 10000):
            raise ValueError("max_windows_per_run must be between 1 and 10000")
        return v

    @field_validator("historical_start_ms")
    @classmethod
    def validate_start(cls, v):
        if v is not None and v < 0:
            raise ValueError("historical_start_ms must not be negative")
        return v


class RunOnceRequest(BaseModel):
    vehicleno: str | None = None


class ProviderPullRequest(BaseModel):
    """A single raw call to a provider endpoint."""
    endpoint: str
    body: dict[str, Any] | None = None

    @field_validator("endpoint")
    @classmethod
    def validate_endpoint(cls, v):
        if not v.startswith("/api/"):
            raise ValueError("endpoint must be a provider path such as /api/standard/getlastgpsstatus")
        if v.rstrip("/").endswith("/gettoken"):
            raise ValueError("the token endpoint cannot be pulled directly")
        return v

    @field_validator("body")
    @classmethod
    def validate_body(cls, v):
        if v and "token" in v:
            raise ValueError("body must not carry a token; the client adds its own")
        return v


class ProviderPullResponse(BaseModel):
    pull_id: int
    endpoint: str
    status: str
    data: Any = None
