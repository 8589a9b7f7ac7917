"""Sync run ledger and provider pull audit log."""

from datetime import datetime
from sqlalchemy import BigInteger, Column, ForeignKey, Index, Integer, String, DateTime, Text, JSON, text

from fleetsync.core.database import Base


class SyncRun(Base):
    """One live sync cycle across the fleet."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    trigger = Column(String, nullable=False)  # "scheduled", "manual", "backfill"
    status = Column(String, nullable=False)  # "running", "success", "partial", "failed"
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    finished_at = Column(DateTime, nullable=True)
    heartbeat_at = Column(DateTime, nullable=True)  # bumped after every provider call
    window_start_ms = Column(BigInteger, nullable=True)
    window_end_ms = Column(BigInteger, nullable=True)
    vehicles_discovered = Column(Integer, nullable=False, default=0)
    vehicles_processed = Column(Integer, nullable=False, default=0)
    endpoints_called = Column(Integer, nullable=False, default=0)
    records_written = Column(Integer, nullable=False, default=0)
    errors_count = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, nullable=True)

    # Only one run may be in flight at a time
    __table_args__ = (
        Index(
            "uix_sync_runs_single_running",
            "status",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )


class SyncRunItem(Base):
    """One external call made during a sync run."""

    __tablename__ = "sync_run_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    sync_run_id = Column(Integer, ForeignKey("sync_runs.id"), nullable=False, index=True)
    endpoint = Column(String, nullable=False)
    vehicleno = Column(String, nullable=True)
    status = Column(String, nullable=False)  # "success", "failed"
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)


class ProviderPull(Base):
    """Audit log of every call made to the telematics provider."""

    __tablename__ = "provider_pulls"

    id = Column(Integer, primary_key=True, autoincrement=True)
    endpoint = Column(String, nullable=False)
    vehicleno = Column(String, nullable=True)
    status = Column(String, nullable=False)
    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)
    pulled_at = Column(DateTime, nullable=False, default=datetime.utcnow)
