"""
Tests for check-in / check-out rules, occupancy, student status and roster.
"""

import asyncio
import uuid
from datetime import timedelta

import pytest

from app.core.errors import CapacityError, ConflictError, NotFoundError, StateError, ValidationError
from app.core.events import EventType
from app.models.fleet import Vehicle
from app.models.location import LocationReport
from app.models.route import Route, Stop
from app.models.ridership import (
    CheckRequest,
    RidershipEventType,
    StudentSubscriptionCreate,
    StudentTransportStatus,
    SubscriptionStatus,
    ValidationMethod,
)


def check(student, vehicle, stop, **kwargs) -> CheckRequest:
    return CheckRequest(student_id=student.student_id, vehicle_id=vehicle.id, stop_id=stop.id, **kwargs)


# ============================================================
# CHECK-IN
# ============================================================

@pytest.mark.asyncio
async def test_check_in_records_event_and_occupancy(services, vehicle, stops, student, clock):
    event = await services.ridership.check_in(check(student, vehicle, stops[0]))

    assert event.event_type == RidershipEventType.CHECK_IN
    assert event.service_date == clock.now.date()
    assert event.route_id == student.route_id
    assert event.is_automated is False
    assert vehicle.current_occupancy == 1

    published = services.bus.events_of(EventType.STUDENT_CHECKED_IN)
    assert len(published) == 1
    assert published[0].payload["occupancy"] == 1


@pytest.mark.asyncio
async def test_scanned_check_in_is_automated(services, vehicle, stops, student):
    event = await services.ridership.check_in(
        check(student, vehicle, stops[0], validation_method=ValidationMethod.QR_CODE,
              validation_data={"qr_code": student.qr_code})
    )
    assert event.is_automated is True
    assert event.validation_data == {"qr_code": student.qr_code}


@pytest.mark.asyncio
@pytest.mark.parametrize("validation_data", [None, {}, {"qr_code": "STU0000000000000000"}])
async def test_qr_check_in_needs_the_students_code(services, vehicle, stops, student, validation_data):
    with pytest.raises(ValidationError):
        await services.ridership.check_in(
            check(student, vehicle, stops[0], validation_method=ValidationMethod.QR_CODE,
                  validation_data=validation_data)
        )

    assert vehicle.current_occupancy == 0
    assert services.bus.events_of(EventType.STUDENT_CHECKED_IN) == []


@pytest.mark.asyncio
async def test_qr_check_in_rejects_another_students_code(services, vehicle, stops, student, make_student):
    other = await make_student()

    with pytest.raises(ValidationError):
        await services.ridership.check_in(
            check(student, vehicle, stops[0], validation_method=ValidationMethod.QR_CODE,
                  validation_data={"qr_code": other.qr_code})
        )
    assert vehicle.current_occupancy == 0


@pytest.mark.asyncio
async def test_validate_qr_code(services, repo, student, make_student):
    other = await make_student()
    assert student.qr_code.startswith("STU")
    assert student.qr_code != other.qr_code

    found = await services.ridership.validate_qr_code(student.qr_code)
    assert found.id == student.id

    await repo.update(student, status=SubscriptionStatus.INACTIVE)
    with pytest.raises(ValidationError, match="Invalid or inactive QR code"):
        await services.ridership.validate_qr_code(student.qr_code)
    with pytest.raises(ValidationError):
        await services.ridership.validate_qr_code("STU-unknown")


@pytest.mark.asyncio
async def test_second_check_in_same_day_conflicts(services, vehicle, stops, student, clock):
    await services.ridership.check_in(check(student, vehicle, stops[0]))
    clock.advance(hours=1)

    with pytest.raises(ConflictError):
        await services.ridership.check_in(check(student, vehicle, stops[1]))

    assert vehicle.current_occupancy == 1
    assert len(services.bus.events_of(EventType.STUDENT_CHECKED_IN)) == 1


@pytest.mark.asyncio
async def test_concurrent_duplicate_check_ins(services, vehicle, stops, student):
    results = await asyncio.gather(
        services.ridership.check_in(check(student, vehicle, stops[0])),
        services.ridership.check_in(check(student, vehicle, stops[0])),
        return_exceptions=True
    )

    assert sum(1 for r in results if isinstance(r, ConflictError)) == 1
    assert vehicle.current_occupancy == 1


@pytest.mark.asyncio
async def test_check_in_next_day_is_allowed(services, vehicle, stops, student, clock):
    await services.ridership.check_in(check(student, vehicle, stops[0]))
    clock.advance(days=1)

    event = await services.ridership.check_in(check(student, vehicle, stops[0]))
    assert event.service_date == clock.now.date()


@pytest.mark.asyncio
async def test_check_in_requires_active_subscription(services, vehicle, stops):
    stranger = CheckRequest(student_id=uuid.uuid4(), vehicle_id=vehicle.id, stop_id=stops[0].id)
    with pytest.raises(NotFoundError):
        await services.ridership.check_in(stranger)


@pytest.mark.asyncio
async def test_check_in_unknown_stop(services, vehicle, student):
    request = CheckRequest(student_id=student.student_id, vehicle_id=vehicle.id, stop_id=uuid.uuid4())
    with pytest.raises(NotFoundError):
        await services.ridership.check_in(request)


@pytest.mark.asyncio
async def test_full_vehicle_rejects_check_in(services, vehicle, stops, make_student):
    riders = [await make_student() for _ in range(3)]

    await services.ridership.check_in(check(riders[0], vehicle, stops[1]))
    await services.ridership.check_in(check(riders[1], vehicle, stops[1]))
    with pytest.raises(CapacityError):
        await services.ridership.check_in(check(riders[2], vehicle, stops[1]))

    assert vehicle.current_occupancy == 2


# ============================================================
# CHECK-OUT
# ============================================================

@pytest.mark.asyncio
async def test_check_out_without_check_in(services, vehicle, stops, student):
    with pytest.raises(StateError):
        await services.ridership.check_out(check(student, vehicle, stops[2]))


@pytest.mark.asyncio
async def test_check_in_then_out_once_each(services, vehicle, stops, student, clock):
    await services.ridership.check_in(check(student, vehicle, stops[0]))
    clock.advance(minutes=20)
    event = await services.ridership.check_out(check(student, vehicle, stops[2]))

    assert event.event_type == RidershipEventType.CHECK_OUT
    assert vehicle.current_occupancy == 0
    assert len(services.bus.events_of(EventType.STUDENT_CHECKED_OUT)) == 1

    with pytest.raises(ConflictError):
        await services.ridership.check_out(check(student, vehicle, stops[2]))
    assert vehicle.current_occupancy == 0


@pytest.mark.asyncio
async def test_occupancy_never_negative(services, repo, vehicle, stops, student):
    await services.ridership.check_in(check(student, vehicle, stops[0]))
    await repo.update(vehicle, current_occupancy=0)

    await services.ridership.check_out(check(student, vehicle, stops[2]))
    assert vehicle.current_occupancy == 0


@pytest.mark.asyncio
async def test_check_out_on_another_vehicle_conflicts(services, repo, vehicle, stops, student):
    other_bus = await repo.create(Vehicle(name="Bus 8", license_plate="SCH-008", capacity=40, current_occupancy=3))
    await services.ridership.check_in(check(student, vehicle, stops[0]))

    with pytest.raises(ConflictError):
        await services.ridership.check_out(check(student, other_bus, stops[2]))

    assert vehicle.current_occupancy == 1
    assert other_bus.current_occupancy == 3

    await services.ridership.check_out(check(student, vehicle, stops[2]))
    assert vehicle.current_occupancy == 0


# ============================================================
# STUDENT STATUS
# ============================================================

async def report_position(services, vehicle, route, speed):
    await services.tracking.ingest(LocationReport(
        vehicle_id=vehicle.id, route_id=route.id, latitude=0.005, longitude=0.01, speed_kmh=speed
    ))


@pytest.mark.asyncio
async def test_waiting_for_pickup_without_live_bus(services, student, assignment):
    assert await services.ridership.student_status(student.student_id) == StudentTransportStatus.WAITING_FOR_PICKUP


@pytest.mark.asyncio
async def test_bus_approaching_when_assigned_bus_reports(services, vehicle, route, student, assignment):
    await report_position(services, vehicle, route, speed=30)
    assert await services.ridership.student_status(student.student_id) == StudentTransportStatus.BUS_APPROACHING


@pytest.mark.asyncio
async def test_stale_bus_is_not_approaching(services, vehicle, route, student, assignment, clock):
    await report_position(services, vehicle, route, speed=30)
    clock.advance(minutes=30)
    assert await services.ridership.student_status(student.student_id) == StudentTransportStatus.WAITING_FOR_PICKUP


@pytest.mark.asyncio
async def test_on_bus_traveling_or_waiting(services, vehicle, route, stops, student):
    await services.ridership.check_in(check(student, vehicle, stops[0]))

    await report_position(services, vehicle, route, speed=30)
    assert await services.ridership.student_status(student.student_id) == StudentTransportStatus.ON_BUS_TRAVELING

    await report_position(services, vehicle, route, speed=0)
    assert await services.ridership.student_status(student.student_id) == StudentTransportStatus.ON_BUS_WAITING


@pytest.mark.asyncio
async def test_arrived_after_check_out(services, vehicle, stops, student):
    await services.ridership.check_in(check(student, vehicle, stops[0]))
    await services.ridership.check_out(check(student, vehicle, stops[2]))

    assert await services.ridership.student_status(student.student_id) == StudentTransportStatus.ARRIVED_AT_SCHOOL


@pytest.mark.asyncio
async def test_status_is_per_service_date(services, vehicle, stops, student, clock):
    await services.ridership.check_in(check(student, vehicle, stops[0]))
    await services.ridership.check_out(check(student, vehicle, stops[2]))

    tomorrow = clock.now + timedelta(days=1)
    assert await services.ridership.student_status(student.student_id, tomorrow) == StudentTransportStatus.WAITING_FOR_PICKUP


# ============================================================
# SUBSCRIPTIONS AND ROSTER
# ============================================================

@pytest.mark.asyncio
async def test_subscribe_rejects_stop_from_other_route(services, repo, route, stops):
    other = await repo.create(Route(name="South Loop"))
    foreign = await repo.create(Stop(route_id=other.id, name="Z", latitude=1, longitude=1, stop_order=1))

    with pytest.raises(StateError):
        await services.ridership.subscribe(StudentSubscriptionCreate(
            student_id=uuid.uuid4(), route_id=route.id, pickup_stop_id=foreign.id
        ))


@pytest.mark.asyncio
async def test_bus_roster(services, vehicle, route, stops, make_student, clock):
    riders = [await make_student() for _ in range(2)]
    await services.ridership.check_in(check(riders[0], vehicle, stops[1]))

    roster = await services.ridership.bus_roster(route.id, vehicle.id)

    assert roster.service_date == clock.now.date()
    assert roster.total_students == 2
    assert roster.checked_in == 1
    assert roster.checked_out == 0
    assert roster.no_shows == 1
    entry = next(s for s in roster.students if s.student_id == riders[0].student_id)
    assert entry.checked_in and not entry.checked_out


@pytest.mark.asyncio
async def test_roster_unknown_vehicle(services, route):
    with pytest.raises(NotFoundError):
        await services.ridership.bus_roster(route.id, uuid.uuid4())


def test_vehicle_available_seats():
    bus = Vehicle(name="Bus 1", license_plate="X", capacity=3, current_occupancy=5)
    assert bus.available_seats == 0
