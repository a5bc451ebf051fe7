import logging
import uuid
from typing import Optional

from app.core.clock import Clock, as_utc, service_date, service_timezone, utc_now
from app.core.errors import ConflictError, NotFoundError
from app.models.fleet import AssignmentStatus, RouteAssignment, Vehicle
from app.models.ridership import RidershipEvent, RidershipEventType
from app.models.route import Route
from app.models.shift import DayPart, ShiftLog, ShiftStatus, ShiftTelemetry
from app.repository import Repository

logger = logging.getLogger(__name__)

SHIFT_KEY = ("driver_id", "vehicle_id", "route_id", "service_date", "status")


class DriverShiftManager:
    """Start and end of a driver's run on a vehicle and route"""

    def __init__(self, repository: Repository, clock: Clock = utc_now):
        self.repository = repository
        self.clock = clock

    async def start_route(self, telemetry: ShiftTelemetry) -> ShiftLog:
        now = self.clock()
        today = service_date(now)

        await self.repository.require(Vehicle, telemetry.vehicle_id)
        await self.repository.require(Route, telemetry.route_id)

        if await self._in_progress(telemetry, today) is not None:
            raise ConflictError(
                "Route already started today",
                {"driver_id": str(telemetry.driver_id), "service_date": today.isoformat()}
            )

        shift = ShiftLog(
            driver_id=telemetry.driver_id,
            vehicle_id=telemetry.vehicle_id,
            route_id=telemetry.route_id,
            service_date=today,
            day_part=DayPart.for_hour(as_utc(now).astimezone(service_timezone()).hour),
            status=ShiftStatus.IN_PROGRESS,
            departure_time=now,
            odometer_start=telemetry.odometer,
            fuel_level_start=telemetry.fuel_level,
            safety_checklist=telemetry.checklist,
            notes=telemetry.notes
        )

        assignments = await self.repository.find(
            RouteAssignment,
            driver_id=telemetry.driver_id,
            vehicle_id=telemetry.vehicle_id,
            route_id=telemetry.route_id,
            # a run left open on an earlier day keeps its assignment in_progress
            status=[AssignmentStatus.ACTIVE, AssignmentStatus.IN_PROGRESS]
        )
        assignment = next((a for a in assignments if a.covers(today)), None)

        async with self.repository.transaction():
            if await self.repository.insert_if_absent(shift, SHIFT_KEY) is None:
                raise ConflictError(
                    "Route already started today",
                    {"driver_id": str(telemetry.driver_id), "service_date": today.isoformat()}
                )
            if assignment is not None:
                await self.repository.update(assignment, status=AssignmentStatus.IN_PROGRESS)

        if assignment is None:
            logger.warning(
                f"Driver {telemetry.driver_id} started route {telemetry.route_id} "
                f"without an active assignment for vehicle {telemetry.vehicle_id}"
            )
        logger.info(f"Shift {shift.id} started ({shift.day_part.value}) by driver {telemetry.driver_id}")
        return shift

    async def end_route(self, telemetry: ShiftTelemetry) -> ShiftLog:
        now = self.clock()
        today = service_date(now)

        shift = await self._in_progress(telemetry, today)
        if shift is None:
            raise NotFoundError(
                "No route in progress today",
                {"driver_id": str(telemetry.driver_id), "service_date": today.isoformat()}
            )

        picked_up = telemetry.students_picked_up
        if picked_up is None:
            picked_up = await self._count_events(telemetry, today, RidershipEventType.CHECK_IN)
        dropped_off = telemetry.students_dropped_off
        if dropped_off is None:
            dropped_off = await self._count_events(telemetry, today, RidershipEventType.CHECK_OUT)

        assignment = await self.repository.latest(
            RouteAssignment,
            "created_at",
            driver_id=telemetry.driver_id,
            vehicle_id=telemetry.vehicle_id,
            route_id=telemetry.route_id,
            status=AssignmentStatus.IN_PROGRESS
        )

        async with self.repository.transaction():
            await self.repository.update(
                shift,
                status=ShiftStatus.COMPLETED,
                arrival_time=now,
                odometer_end=telemetry.odometer,
                fuel_level_end=telemetry.fuel_level,
                students_picked_up=picked_up,
                students_dropped_off=dropped_off,
                notes=telemetry.notes or shift.notes
            )
            if assignment is not None:
                continues = assignment.valid_until is None or assignment.valid_until > today
                await self.repository.update(
                    assignment,
                    status=AssignmentStatus.ACTIVE if continues else AssignmentStatus.COMPLETED
                )

        logger.info(
            f"Shift {shift.id} completed: {picked_up} picked up, {dropped_off} dropped off"
        )
        return shift

    async def active_shift(self, driver_id: uuid.UUID) -> Optional[ShiftLog]:
        return await self.repository.latest(
            ShiftLog, "departure_time", driver_id=driver_id, status=ShiftStatus.IN_PROGRESS
        )

    async def _in_progress(self, telemetry: ShiftTelemetry, day) -> Optional[ShiftLog]:
        rows = await self.repository.find(
            ShiftLog,
            limit=1,
            driver_id=telemetry.driver_id,
            vehicle_id=telemetry.vehicle_id,
            route_id=telemetry.route_id,
            service_date=day,
            status=ShiftStatus.IN_PROGRESS
        )
        return rows[0] if rows else None

    async def _count_events(self, telemetry: ShiftTelemetry, day, event_type: RidershipEventType) -> int:
        events = await self.repository.find(
            RidershipEvent,
            vehicle_id=telemetry.vehicle_id,
            route_id=telemetry.route_id,
            service_date=day,
            event_type=event_type
        )
        return len(events)
