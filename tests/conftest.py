"""Shared test fixtures for the tripsync test suite."""

from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

from tripsync.core.database import Base
# Import all models so their metadata is registered on Base
import tripsync.models  # noqa: F401
from tripsync.services.store import LocalStore

USER_ID = "user-1"


@pytest_asyncio.fixture
async def session_maker():
    """
    Session factory over an in-memory SQLite database.

    StaticPool keeps a single connection so every session sees the same
    database. Each test gets a clean one.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_maker):
    return LocalStore(session_maker)


@pytest_asyncio.fixture
async def async_session(session_maker):
    """Plain session for asserting on stored rows."""
    async with session_maker() as session:
        yield session


class FakeClock:
    """Settable clock for TTL and retry window tests."""

    def __init__(self, now: datetime = datetime(2025, 6, 1, 12, 0, 0)):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


def make_trip_row(trip_id: str, minutes: int = 0, **overrides) -> dict:
    """Trip column values as produced by parse_trip."""
    start = datetime(2025, 5, 1, 8, 0, 0) + timedelta(minutes=minutes)
    row = {
        "id": trip_id,
        "user_id": USER_ID,
        "start_time": start,
        "end_time": start + timedelta(minutes=20),
        "duration": 1200,
        "start_station_id": "s1",
        "start_station_name": "W 21 St & 6 Ave",
        "start_lat": 40.7417,
        "start_lon": -73.9942,
        "end_station_id": "s2",
        "end_station_name": "Broadway & E 14 St",
        "end_lat": 40.7345,
        "end_lon": -73.9907,
        "bike_type": "classic",
        "distance": 1500.0,
        "angel_points": None,
        "cost": None,
    }
    row.update(overrides)
    return row
