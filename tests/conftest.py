"""Shared fixtures: in-memory SQLite database, fake clock, wired services."""
import os

# Must be set before ridepool.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ridepool.database import init_models
from ridepool.schemas.trip import Location, TripDraft
from ridepool.services.live import ChangeFeed
from ridepool.services.registry import build_services
from ridepool.services.validation import Guard


class FakeClock:
    """Seconds since epoch, advanced by hand."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_models(engine)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def guard(clock):
    return Guard(clock=clock)


@pytest.fixture
def services(session_factory, guard):
    return build_services(session_factory, feed=ChangeFeed(), guard=guard)


def make_draft(
    user_id: str,
    pickup=(31.52, 74.35),
    dropoff=(31.54, 74.38),
    vehicle_type: str = "car",
    price: float = 200,
    trip_id: str | None = None,
    riders: int = 1,
    pickup_address: str = "Liberty Market",
    dropoff_address: str = "Model Town",
) -> TripDraft:
    return TripDraft(
        id=trip_id,
        user_id=user_id,
        pickup=Location(latitude=pickup[0], longitude=pickup[1], address=pickup_address),
        dropoff=Location(latitude=dropoff[0], longitude=dropoff[1], address=dropoff_address),
        vehicle_type=vehicle_type,
        estimated_price=price,
        riders=riders,
    )


@pytest.fixture
def draft():
    """Factory for bookable trips; defaults to the Lahore trip used across the suite."""
    return make_draft
