from datetime import datetime
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Integer,
    String,
    DateTime,
    Float,
    JSON,
    UniqueConstraint,
)
from fleetsync.core.database import Base


class VehicleDeviceMap(Base):
    """Fleet roster: which telematics device is fitted to which vehicle."""

    __tablename__ = "vehicle_device_map"

    vehicleno = Column(String, primary_key=True)
    deviceno = Column(String, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    first_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_seen_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    last_sync_run_id = Column(Integer, nullable=True)
    raw = Column(JSON, nullable=True)


class GpsLatest(Base):
    """Most recent GPS fix per vehicle."""

    __tablename__ = "gps_latest"

    vehicleno = Column(String, primary_key=True)
    commtime_ms = Column(BigInteger, nullable=False)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    alti = Column(Float, nullable=True)
    devbattery = Column(Float, nullable=True)
    vehbattery = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    ignstatus = Column(Integer, nullable=True)
    mobili = Column(Integer, nullable=True)
    dout_1 = Column(Integer, nullable=True)
    dout_2 = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    last_sync_run_id = Column(Integer, nullable=True)
    raw = Column(JSON, nullable=True)


class CanLatest(Base):
    """Most recent battery/CAN metrics per vehicle. Each metric carries its own timestamp."""

    __tablename__ = "can_latest"

    vehicleno = Column(String, primary_key=True)
    reading_ms = Column(BigInteger, nullable=True)  # newest of the per-metric timestamps
    soc_value = Column(Float, nullable=True)
    soc_ts_ms = Column(BigInteger, nullable=True)
    battery_temp_value = Column(Float, nullable=True)
    battery_temp_ts_ms = Column(BigInteger, nullable=True)
    battery_voltage_value = Column(Float, nullable=True)
    battery_voltage_ts_ms = Column(BigInteger, nullable=True)
    current_value = Column(Float, nullable=True)
    current_ts_ms = Column(BigInteger, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    last_sync_run_id = Column(Integer, nullable=True)
    raw = Column(JSON, nullable=True)


class FuelLatest(Base):
    """Most recent fuel level per vehicle."""

    __tablename__ = "fuel_latest"

    vehicleno = Column(String, primary_key=True)
    fueltime_ms = Column(BigInteger, nullable=False)
    fuellevel_pct = Column(Float, nullable=True)
    fuellevel_litres = Column(Float, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)
    last_sync_run_id = Column(Integer, nullable=True)
    raw = Column(JSON, nullable=True)


class GpsHistory(Base):
    """GPS track points."""

    __tablename__ = "gps_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicleno = Column(String, nullable=False)
    commtime_ms = Column(BigInteger, nullable=False)
    lat = Column(Float, nullable=False)
    lng = Column(Float, nullable=False)
    alti = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    ignstatus = Column(Integer, nullable=True)
    mobili = Column(Integer, nullable=True)
    devbattery = Column(Float, nullable=True)
    vehbattery = Column(Float, nullable=True)
    raw = Column(JSON, nullable=True)

    __table_args__ = (UniqueConstraint("vehicleno", "commtime_ms", name="uix_gps_history_vehicle_time"),)


class CanHistory(Base):
    """Battery metrics history."""

    __tablename__ = "can_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicleno = Column(String, nullable=False)
    time_ms = Column(BigInteger, nullable=False)
    soc = Column(Float, nullable=True)
    soh = Column(Float, nullable=True)
    battery_temp = Column(Float, nullable=True)
    battery_voltage = Column(Float, nullable=True)
    current = Column(Float, nullable=True)
    charge_cycle = Column(Integer, nullable=True)
    raw = Column(JSON, nullable=True)

    __table_args__ = (UniqueConstraint("vehicleno", "time_ms", name="uix_can_history_vehicle_time"),)


class FuelHistory(Base):
    """Fuel level history, either as percentage or litres."""

    __tablename__ = "fuel_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicleno = Column(String, nullable=False)
    time_ms = Column(BigInteger, nullable=False)
    in_litres = Column(Boolean, nullable=False)
    value = Column(Float, nullable=True)
    raw = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("vehicleno", "time_ms", "in_litres", name="uix_fuel_history_vehicle_time_unit"),
    )


class DistanceWindow(Base):
    """Distance travelled within one backfill window."""

    __tablename__ = "distance_windows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    vehicleno = Column(String, nullable=False)
    start_ms = Column(BigInteger, nullable=False)
    end_ms = Column(BigInteger, nullable=False)
    distance = Column(Float, nullable=False)
    raw = Column(JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("vehicleno", "start_ms", "end_ms", name="uix_distance_vehicle_window"),
    )
