"""Backfill checkpoints and the singleton job control row."""

from datetime import datetime
from sqlalchemy import BigInteger, Column, Integer, String, DateTime, JSON

from fleetsync.core.database import Base

JOB_CONTROL_ID = 1


class HistoryCheckpoint(Base):
    """Backfill progress for one vehicle and dataset."""

    __tablename__ = "history_checkpoints"

    vehicleno = Column(String, primary_key=True)
    dataset = Column(String, primary_key=True)  # "gps", "can", "fuel_pct", "fuel_litres", "distance"
    last_synced_end_ms = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)


class HistoryJobControl(Base):
    """Backfill job configuration and status. Always a single row with id=1."""

    __tablename__ = "history_job_control"

    id = Column(Integer, primary_key=True)
    status = Column(String, nullable=False, default="idle")  # "idle", "running", "paused"
    historical_start_ms = Column(BigInteger, nullable=False)
    max_windows_per_run = Column(Integer, nullable=False, default=48)
    last_heartbeat_at = Column(DateTime, nullable=True)
    lease_expires_ms = Column(BigInteger, nullable=True)
    last_batch = Column(JSON, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
