"""
Pytest fixtures for test database, client, clock and delivery capture.

Every test gets a fresh in-memory SQLite database (aiosqlite, StaticPool so
all sessions share the one connection) and a FrozenClock pinned to
Monday 2026-03-02 08:00 UTC.

Setup written through `db_session` must be committed before a scheduler
tick runs: the tick's own sessions share the connection and roll back
whatever is left uncommitted when they close.
"""

import os

os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("TIMEZONE", "UTC")
os.environ.setdefault("NOTIFICATION_CHANNEL", "log")
os.environ.setdefault("EVENT_PUBLISHER", "none")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from parking_scheduler.main import app
from parking_scheduler.api.deps import get_clock, get_orchestrator
from parking_scheduler.core.clock import FrozenClock
from parking_scheduler.core.errors import ExternalChannelError
from parking_scheduler.db.base import Base
from parking_scheduler.db.session import get_db
from parking_scheduler.models.parking_lot import ParkingLot
from parking_scheduler.schemas.reservation import ReservationCreate
from parking_scheduler.services import strategy_factory
from parking_scheduler.services.interfaces.channel import NotificationChannel
from parking_scheduler.services.interfaces.publisher import EventPublisher
from parking_scheduler.services.orchestrator import Orchestrator

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Monday
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
TOMORROW_9AM = datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc)


class RecordingChannel(NotificationChannel):
    """Channel that keeps what it was given, or fails on demand."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    async def send(self, message: dict[str, Any]) -> bool:
        if self.fail:
            raise ExternalChannelError("channel down")
        self.sent.append(message)
        return True


class RecordingPublisher(EventPublisher):
    def __init__(self):
        self.events: list[tuple[str, int, dict]] = []

    async def publish(self, topic: str, user_id: int, data: dict) -> None:
        self.events.append((topic, user_id, data))


def booking(resource_id: int, start: datetime = TOMORROW_9AM, hours: float = 1) -> ReservationCreate:
    return ReservationCreate(
        resource_id=resource_id,
        start_time=start,
        end_time=start + timedelta(hours=hours),
        vehicle_info={"license_plate": "ABC 1234"},
    )


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def publisher():
    recorder = RecordingPublisher()
    strategy_factory.set_publisher(recorder)
    yield recorder
    strategy_factory.set_publisher(None)


@pytest.fixture
def orchestrator(session_factory, channel, clock) -> Orchestrator:
    return Orchestrator(session_factory, channel, clock)


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, clock, orchestrator) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client that overrides DB, clock and orchestrator dependencies."""

    async def override_get_db():
        try:
            yield db_session
            await db_session.commit()
        except Exception:
            await db_session.rollback()
            raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


async def create_lot(db: AsyncSession, capacity: int = 1, name: str = "Cairo Road Garage") -> ParkingLot:
    lot = ParkingLot(
        name=name,
        address="Cairo Road, Lusaka",
        capacity=capacity,
        hourly_rate=Decimal("10.00"),
        daily_rate=Decimal("100.00"),
        currency="ZMW",
    )
    db.add(lot)
    await db.commit()
    await db.refresh(lot)
    return lot


@pytest_asyncio.fixture
async def single_space_lot(db_session: AsyncSession) -> ParkingLot:
    """A lot with exactly one space."""
    return await create_lot(db_session, capacity=1)


@pytest_asyncio.fixture
async def test_lot(db_session: AsyncSession) -> ParkingLot:
    """A lot with two spaces."""
    return await create_lot(db_session, capacity=2, name="Manda Hill Parking")


@pytest.fixture
def user_headers():
    def _headers(user_id: int = 1) -> dict:
        return {"X-User-ID": str(user_id)}
    return _headers
