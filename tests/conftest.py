"""
Shared fixtures: a throwaway SQLite database and in-memory stand-ins for the
notification channel, driver directory and offer protocol.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import app.models  # noqa: F401  registers every table on Base.metadata
from app.database import Base
from app.models.driver import Driver
from app.models.ride import Ride
from app.services.driver_directory import DriverCandidate
from app.services.offer import Offer, OfferOutcome

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

CONNAUGHT_PLACE = (28.6315, 77.2167)
CYBER_CITY = (28.4950, 77.0895)


class FrozenClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class RecordingNotifier:
    """Collects events instead of publishing them."""

    def __init__(self, receivers: int = 1):
        self.receivers = receivers
        self.notified: list[tuple[str, object]] = []
        self.sent: list[tuple[str, object]] = []
        self.broadcasts: list[object] = []

    async def notify(self, recipient_id, message):
        self.notified.append((recipient_id, message))

    async def send(self, channel, message):
        self.sent.append((channel, message))
        return self.receivers

    async def broadcast(self, message):
        self.broadcasts.append(message)

    def events_for(self, recipient_id: str, event: str | None = None) -> list:
        return [
            m for r, m in self.notified
            if r == recipient_id and (event is None or m.event == event)
        ]


class StaticDirectory:
    """Returns the configured candidates that fall inside the queried radius."""

    def __init__(self, candidates: list[DriverCandidate] = ()):
        self.candidates = list(candidates)
        self.radii: list[float] = []

    async def find_online(self, pickup, radius_km, category, exclude=()):
        self.radii.append(radius_km)
        excluded = set(exclude)
        found = [
            c for c in self.candidates
            if c.distance_km <= radius_km and c.category == category and c.driver_id not in excluded
        ]
        return sorted(found, key=lambda c: c.distance_km)


class ScriptedOffers:
    """Answers offers from a driver_id -> outcome table (default: time out)."""

    def __init__(self, outcomes: dict[str, OfferOutcome] | None = None, before_answer=None):
        self.outcomes = outcomes or {}
        self.before_answer = before_answer
        self.offered: list[str] = []

    async def offer(self, ride, candidate, metrics, timeout):
        self.offered.append(candidate.driver_id)
        if self.before_answer is not None:
            await self.before_answer(ride, candidate)
        outcome = self.outcomes.get(candidate.driver_id, OfferOutcome.TIMED_OUT)
        return Offer(ride.id, candidate.driver_id, outcome)


def candidate(driver_id: str, distance_km: float, category: str = "sedan") -> DriverCandidate:
    lat, lng = CONNAUGHT_PLACE
    # ~0.009 degrees of latitude per km
    return DriverCandidate(
        driver_id=driver_id,
        category=category,
        lat=lat + distance_km * 0.009,
        lng=lng,
        distance_km=distance_km,
        channel=f"driver:{driver_id}",
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'rides.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def make_driver(session_factory):
    async def _make(driver_id: str | None = None, status: str = "available", category: str = "sedan") -> Driver:
        driver_id = driver_id or f"driver-{uuid.uuid4().hex[:8]}"
        async with session_factory() as session:
            driver = Driver(
                id=driver_id,
                name=f"Driver {driver_id}",
                phone=uuid.uuid4().hex[:12],
                category=category,
                status=status,
            )
            session.add(driver)
            await session.commit()
        return driver

    return _make


@pytest.fixture
def make_ride(session_factory):
    async def _make(**overrides) -> Ride:
        values = dict(
            rider_id="rider-1",
            pickup_address="Connaught Place",
            pickup_lat=CONNAUGHT_PLACE[0],
            pickup_lng=CONNAUGHT_PLACE[1],
            drop_address="Cyber City",
            drop_lat=CYBER_CITY[0],
            drop_lng=CYBER_CITY[1],
            category="sedan",
            trip_kind="outstation",
            distance_km=28.0,
            duration_min=56.0,
            estimated_fare=Decimal("532"),
            fare=Decimal("532"),
            extra_charges=Decimal("0"),
            payment_mode="cash",
            payment_status="PENDING",
            status="SEARCHING",
            otp="5555",
        )
        values.update(overrides)
        async with session_factory() as session:
            ride = Ride(**values)
            session.add(ride)
            await session.commit()
            await session.refresh(ride)
        return ride

    return _make
