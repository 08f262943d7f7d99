"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  The production metadata is created as-is; the
default matching config and penalty matrix are installed for every test.
Time is driven by a ``FakeClock`` so offer expiry and penalty windows are
deterministic.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from src.domain.enums import CaptainStatus, VehicleType
from src.infrastructure.database import Base
from src.infrastructure.notifications import NotificationClient
from src.infrastructure.reference_data import install_reference_data
from src.infrastructure.repositories import CaptainRepository, RideRepository


# ── Test DB (SQLite in-memory) ────────────────────────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionFactory = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)

# Pickup point used across the suite (Bengaluru, MG Road)
PICKUP_LAT, PICKUP_LNG = 12.9756, 77.6050
KM_PER_DEGREE_LAT = 111.195

T0 = datetime(2026, 3, 2, 9, 0, 0, tzinfo=timezone.utc)


def north_of_pickup(km: float) -> tuple[float, float]:
    """Coordinates *km* kilometres due north of the pickup."""
    return PICKUP_LAT + km / KM_PER_DEGREE_LAT, PICKUP_LNG


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create tables and reference data, yield a session, then drop everything."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionFactory() as session:
        await install_reference_data(session)
        await session.commit()
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory():
    return TestSessionFactory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock(spec=NotificationClient)
    mock.send.return_value = True
    return mock


@pytest_asyncio.fixture
async def client(db_session, notifier) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client against the app, wired to the test database."""
    from src.api.app import create_app
    from src.api.dependencies import get_db, get_notification_client
    from src.api.middleware import limiter

    async def _override_get_db():
        async with TestSessionFactory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    limiter.reset()
    app = create_app()
    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_notification_client] = lambda: notifier

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ── Data helpers ──────────────────────────────────────────────────────

_registration_seq = iter(range(1, 1_000_000))


async def make_captain(
    session: AsyncSession,
    *,
    km_from_pickup: Optional[float] = 1.0,
    vehicle_type: VehicleType = VehicleType.CAB,
    status: CaptainStatus = CaptainStatus.ONLINE,
    is_verified: bool = True,
    rating: float = 5.0,
    name: str = "Captain",
) -> int:
    """Insert a captain with one active vehicle; returns the captain id."""
    lat = lng = None
    if km_from_pickup is not None:
        lat, lng = north_of_pickup(km_from_pickup)
    n = next(_registration_seq)
    repo = CaptainRepository(session)
    captain = await repo.create_captain(
        name=f"{name} {n}",
        user_id=9000 + n,
        phone=f"+91-90000-{n:05d}",
        is_verified=is_verified,
        status=status,
        rating=rating,
        current_lat=lat,
        current_lng=lng,
    )
    await repo.add_vehicle(
        captain_id=captain.id,
        vehicle_type=vehicle_type,
        make="Maruti",
        model="Dzire",
        registration_number=f"KA-TEST-{n:06d}",
    )
    await session.commit()
    return captain.id


async def make_ride(
    session: AsyncSession,
    *,
    vehicle_type: VehicleType = VehicleType.CAB,
    city: str = "default",
    estimated_fare: float = 200.0,
    rider_id: int = 42,
) -> int:
    row = await RideRepository(session).create_ride(
        rider_id=rider_id,
        vehicle_type=vehicle_type,
        pickup_lat=PICKUP_LAT,
        pickup_lng=PICKUP_LNG,
        drop_lat=12.9352,
        drop_lng=77.6245,
        city=city,
        estimated_fare=estimated_fare,
    )
    await session.commit()
    return row.id
