"""
Pytest configuration and shared fixtures for the transport core tests.

Everything runs against the in-memory repository; the event bus retries
without waiting so delivery tests stay fast.
"""
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import List

import pytest
import pytest_asyncio

from app.core.events import EventBus
from app.models.fleet import RouteAssignment, Vehicle
from app.models.ridership import StudentSubscription
from app.models.route import Route, Stop
from app.repository import InMemoryRepository
from app.services import TransportServices


class FakeClock:
    """Callable clock the tests can move forward"""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


# ============================================================
# INFRASTRUCTURE
# ============================================================

@pytest.fixture
def clock() -> FakeClock:
    """Monday morning, 07:30 UTC"""
    return FakeClock(datetime(2026, 3, 2, 7, 30, tzinfo=timezone.utc))


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def bus() -> EventBus:
    return EventBus(max_retries=2, backoff_seconds=0)


@pytest.fixture
def services(repo, bus, clock) -> TransportServices:
    return TransportServices(repo, bus, clock=clock)


# ============================================================
# FLEET AND ROUTE DATA
# ============================================================

@pytest_asyncio.fixture
async def vehicle(repo) -> Vehicle:
    return await repo.create(Vehicle(name="Bus 7", license_plate="SCH-007", capacity=2))


@pytest_asyncio.fixture
async def route(repo) -> Route:
    return await repo.create(Route(name="North Loop", code="N1"))


@pytest_asyncio.fixture
async def stops(repo, route) -> List[Stop]:
    """A(0,0), B(0.01,0), C(0.01,0.02): already in nearest-neighbor order"""
    coordinates = [("A", 0.0, 0.0), ("B", 0.01, 0.0), ("C", 0.01, 0.02)]
    created = []
    for order, (name, lat, lon) in enumerate(coordinates, start=1):
        created.append(await repo.create(
            Stop(route_id=route.id, name=name, latitude=lat, longitude=lon, stop_order=order)
        ))
    return created


@pytest.fixture
def driver_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest_asyncio.fixture
async def assignment(repo, vehicle, route, stops, driver_id) -> RouteAssignment:
    return await repo.create(RouteAssignment(
        vehicle_id=vehicle.id,
        route_id=route.id,
        driver_id=driver_id,
        valid_from=date(2026, 1, 5),
        valid_until=date(2026, 6, 30)
    ))


# ============================================================
# STUDENTS
# ============================================================

@pytest_asyncio.fixture
async def student(repo, route, stops) -> StudentSubscription:
    return await repo.create(StudentSubscription(
        student_id=uuid.uuid4(),
        route_id=route.id,
        pickup_stop_id=stops[0].id,
        dropoff_stop_id=stops[2].id
    ))


@pytest_asyncio.fixture
async def make_student(repo, route, stops):
    async def _make() -> StudentSubscription:
        return await repo.create(StudentSubscription(
            student_id=uuid.uuid4(),
            route_id=route.id,
            pickup_stop_id=stops[1].id,
            dropoff_stop_id=stops[2].id
        ))
    return _make
