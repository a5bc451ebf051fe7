"""
Tests for the persistence contract: in-memory store and SQL store
(SQLite in memory) including the storage-level uniqueness rules.
"""

import uuid
from datetime import date, datetime, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from app.core.errors import NotFoundError
from app.database import enable_sqlite_savepoints
from app.models.fleet import Vehicle
from app.models.ridership import RidershipEvent, RidershipEventType, ValidationMethod
from app.models.route import Route, Stop
from app.models.shift import DayPart, ShiftLog, ShiftStatus
from app.repository import SqlRepository


def ridership_event(student_id, vehicle, stop, route) -> RidershipEvent:
    return RidershipEvent(
        student_id=student_id,
        vehicle_id=vehicle.id,
        stop_id=stop.id,
        route_id=route.id,
        event_type=RidershipEventType.CHECK_IN,
        event_timestamp=datetime(2026, 3, 2, 7, 30, tzinfo=timezone.utc),
        service_date=date(2026, 3, 2),
        validation_method=ValidationMethod.MANUAL
    )


# ============================================================
# IN-MEMORY
# ============================================================

@pytest.mark.asyncio
async def test_find_filters_orders_and_limits(repo):
    for capacity in (30, 10, 20):
        await repo.create(Vehicle(name=f"Bus {capacity}", license_plate=str(capacity), capacity=capacity))

    rows = await repo.find(Vehicle, order_by="capacity")
    assert [v.capacity for v in rows] == [10, 20, 30]

    rows = await repo.find(Vehicle, order_by="capacity", descending=True, limit=2)
    assert [v.capacity for v in rows] == [30, 20]

    rows = await repo.find(Vehicle, capacity=[10, 30])
    assert sorted(v.capacity for v in rows) == [10, 30]

    latest = await repo.latest(Vehicle, "capacity", name="Bus 20")
    assert latest.capacity == 20


@pytest.mark.asyncio
async def test_require_unknown_record(repo):
    with pytest.raises(NotFoundError):
        await repo.require(Vehicle, uuid.uuid4())


@pytest.mark.asyncio
async def test_transaction_rolls_back_all_writes(repo, vehicle, route):
    with pytest.raises(RuntimeError):
        async with repo.transaction():
            await repo.update(vehicle, current_occupancy=5)
            await repo.create(Stop(route_id=route.id, name="X", latitude=0, longitude=0, stop_order=1))
            async with repo.transaction():
                await repo.update(route, name="Renamed")
            raise RuntimeError("boom")

    assert vehicle.current_occupancy == 0
    assert route.name == "North Loop"
    assert await repo.find(Stop) == []


@pytest.mark.asyncio
async def test_transaction_restores_deleted_records(repo, route, stops):
    with pytest.raises(RuntimeError):
        async with repo.transaction():
            await repo.delete(stops[0])
            raise RuntimeError("boom")

    assert await repo.get(Stop, stops[0].id) is stops[0]


@pytest.mark.asyncio
async def test_insert_if_absent_in_memory(repo, vehicle, route, stops):
    student_id = uuid.uuid4()
    key = ("student_id", "service_date", "event_type")

    first = await repo.insert_if_absent(ridership_event(student_id, vehicle, stops[0], route), key)
    second = await repo.insert_if_absent(ridership_event(student_id, vehicle, stops[1], route), key)

    assert first is not None
    assert second is None
    assert len(await repo.find(RidershipEvent)) == 1


# ============================================================
# SQL (SQLite in memory)
# ============================================================

@pytest_asyncio.fixture
async def sql_repo():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    enable_sqlite_savepoints(engine)
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield SqlRepository(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))

    await engine.dispose()


@pytest_asyncio.fixture
async def sql_fleet(sql_repo):
    vehicle = await sql_repo.create(Vehicle(name="Bus 1", license_plate="SQL-1", capacity=30))
    route = await sql_repo.create(Route(name="Route 1"))
    stop = await sql_repo.create(Stop(route_id=route.id, name="A", latitude=0, longitude=0, stop_order=1))
    return vehicle, route, stop


@pytest.mark.asyncio
async def test_sql_create_get_update(sql_repo, sql_fleet):
    vehicle, _, _ = sql_fleet

    await sql_repo.update(vehicle, current_occupancy=3)
    stored = await sql_repo.get(Vehicle, vehicle.id)
    assert stored.current_occupancy == 3


@pytest.mark.asyncio
async def test_sql_unique_ridership_key(sql_repo, sql_fleet):
    vehicle, route, stop = sql_fleet
    student_id = uuid.uuid4()
    key = ("student_id", "service_date", "event_type")

    assert await sql_repo.insert_if_absent(ridership_event(student_id, vehicle, stop, route), key) is not None
    assert await sql_repo.insert_if_absent(ridership_event(student_id, vehicle, stop, route), key) is None
    assert len(await sql_repo.find(RidershipEvent, student_id=student_id)) == 1


@pytest.mark.asyncio
async def test_sql_one_in_progress_shift(sql_repo, sql_fleet):
    vehicle, route, _ = sql_fleet
    driver_id = uuid.uuid4()
    key = ("driver_id", "vehicle_id", "route_id", "service_date", "status")

    def shift(status=ShiftStatus.IN_PROGRESS):
        return ShiftLog(
            driver_id=driver_id, vehicle_id=vehicle.id, route_id=route.id,
            service_date=date(2026, 3, 2), day_part=DayPart.MORNING, status=status
        )

    first = await sql_repo.insert_if_absent(shift(), key)
    assert await sql_repo.insert_if_absent(shift(), key) is None

    # completed logs are outside the partial index
    await sql_repo.update(first, status=ShiftStatus.COMPLETED)
    assert await sql_repo.insert_if_absent(shift(), key) is not None
    assert await sql_repo.insert_if_absent(shift(ShiftStatus.COMPLETED), key) is not None


@pytest.mark.asyncio
async def test_sql_transaction_rolls_back(sql_repo, sql_fleet):
    vehicle, route, _ = sql_fleet

    with pytest.raises(RuntimeError):
        async with sql_repo.transaction():
            await sql_repo.update(vehicle, current_occupancy=9)
            await sql_repo.create(Stop(route_id=route.id, name="B", latitude=0, longitude=0.01, stop_order=2))
            raise RuntimeError("boom")

    # touched records stay usable and hold the stored values
    assert vehicle.current_occupancy == 0

    stored = await sql_repo.get(Vehicle, vehicle.id)
    assert stored.current_occupancy == 0
    assert len(await sql_repo.find(Stop, route_id=route.id)) == 1


@pytest.mark.asyncio
async def test_sql_records_usable_after_failed_write(sql_repo, sql_fleet):
    vehicle, route, stop = sql_fleet

    with pytest.raises(RuntimeError):
        async with sql_repo.transaction():
            await sql_repo.update(route, name="Renamed")
            await sql_repo.delete(stop)
            raise RuntimeError("boom")

    assert route.name == "Route 1"
    assert stop.name == "A"
    await sql_repo.update(vehicle, current_occupancy=2)
    assert (await sql_repo.get(Vehicle, vehicle.id)).current_occupancy == 2
    assert (await sql_repo.get(Stop, stop.id)) is not None
