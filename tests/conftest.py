"""Shared test fixtures for the fleetsync test suite."""

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from fleetsync.core.database import Base
# Import all models so their metadata is registered on Base
import fleetsync.models  # noqa: F401
from fleetsync.services.provider import ProviderClient

from factories import envelope, gps_payload, can_payload, fuel_payload, roster


@pytest_asyncio.fixture
async def async_session():
    """
    Provide an in-memory SQLite async session for tests.

    Creates all tables before the test, drops them after. Each test gets
    a clean database.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def provider():
    """
    A ProviderClient mock answering every endpoint successfully.

    One vehicle (KA01AB1234) in the roster, valid latest snapshots and empty
    history. Tests override individual methods' return_value/side_effect.
    """
    mock = AsyncMock(spec=ProviderClient)
    mock.list_vehicle_device_mapping.return_value = envelope(roster(("KA01AB1234", "DEV-1")))
    mock.get_last_gps_status.return_value = envelope(gps_payload())
    mock.get_latest_can.return_value = envelope(can_payload())
    mock.get_last_fuel_status.return_value = envelope(fuel_payload())
    mock.get_gps_history.return_value = envelope([])
    mock.get_battery_metrics_history.return_value = envelope([])
    mock.get_fuel_history.return_value = envelope([])
    mock.get_distance_travelled.return_value = envelope({"distance": 0})
    return mock
