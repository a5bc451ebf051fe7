"""
Student check-in / check-out.

Per student and service date there is at most one check-in and at most
one check-out, and a check-out needs that day's check-in. The application
checks first for a clear error; the storage unique key on
(student_id, service_date, event_type) settles any race.
"""

import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from app.core.clock import Clock, as_utc, service_date, utc_now
from app.core.errors import CapacityError, ConflictError, NotFoundError, StateError, ValidationError
from app.core.events import EventBus, EventType
from app.core.fleet import FleetAssignments
from app.core.tracking import LocationIngestor
from app.models.fleet import Vehicle
from app.models.location import TrackingStatus
from app.models.ridership import (
    BusRoster,
    CheckRequest,
    RidershipEvent,
    RidershipEventType,
    RosterEntry,
    StudentSubscription,
    StudentSubscriptionCreate,
    StudentTransportStatus,
    SubscriptionStatus,
    ValidationMethod,
)
from app.models.route import Route, Stop
from app.repository import Repository

logger = logging.getLogger(__name__)

RIDERSHIP_KEY = ("student_id", "service_date", "event_type")


class RidershipTracker:
    def __init__(
        self,
        repository: Repository,
        bus: EventBus,
        fleet: FleetAssignments,
        ingestor: LocationIngestor,
        clock: Clock = utc_now
    ):
        self.repository = repository
        self.bus = bus
        self.fleet = fleet
        self.ingestor = ingestor
        self.clock = clock
        # occupancy is read-modify-write per vehicle
        self._locks: Dict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def subscribe(self, data: StudentSubscriptionCreate) -> StudentSubscription:
        await self.repository.require(Route, data.route_id)
        for stop_id in (data.pickup_stop_id, data.dropoff_stop_id):
            if stop_id is None:
                continue
            stop = await self.repository.require(Stop, stop_id)
            if stop.route_id != data.route_id:
                raise StateError(
                    "Stop does not belong to the subscribed route",
                    {"stop_id": str(stop_id), "route_id": str(data.route_id)}
                )

        subscription = StudentSubscription(**data.model_dump())
        await self.repository.create(subscription)
        logger.info(f"Student {data.student_id} subscribed to route {data.route_id}")
        return subscription

    async def validate_qr_code(self, qr_code: str) -> StudentSubscription:
        """Active subscription a scanned QR code belongs to"""
        rows = await self.repository.find(
            StudentSubscription, limit=1, qr_code=qr_code, status=SubscriptionStatus.ACTIVE
        )
        if not rows:
            raise ValidationError("Invalid or inactive QR code")
        return rows[0]

    async def active_subscriptions(self, student_id: uuid.UUID) -> List[StudentSubscription]:
        return await self.repository.find(
            StudentSubscription, student_id=student_id, status=SubscriptionStatus.ACTIVE
        )

    async def events_for_day(self, student_id: uuid.UUID, day: date) -> Dict[RidershipEventType, RidershipEvent]:
        events = await self.repository.find(RidershipEvent, student_id=student_id, service_date=day)
        return {event.event_type: event for event in events}

    async def check_in(self, request: CheckRequest) -> RidershipEvent:
        moment = as_utc(request.timestamp) if request.timestamp else self.clock()
        day = service_date(moment)

        subscriptions = await self.active_subscriptions(request.student_id)
        if not subscriptions:
            raise NotFoundError(
                "Student has no active transport subscription",
                {"student_id": str(request.student_id)}
            )

        if request.validation_method == ValidationMethod.QR_CODE:
            scanned = (request.validation_data or {}).get("qr_code")
            subscriptions = [s for s in subscriptions if scanned and s.qr_code == scanned]
            if not subscriptions:
                raise ValidationError(
                    "Invalid or inactive QR code for this student",
                    {"student_id": str(request.student_id)}
                )

        await self.repository.require(Vehicle, request.vehicle_id)
        stop = await self.repository.require(Stop, request.stop_id)
        subscription = next((s for s in subscriptions if s.route_id == stop.route_id), subscriptions[0])

        async with self._locks[request.vehicle_id]:
            if RidershipEventType.CHECK_IN in await self.events_for_day(request.student_id, day):
                raise ConflictError(
                    "Student already checked in today",
                    {"student_id": str(request.student_id), "service_date": day.isoformat()}
                )

            vehicle = await self.repository.require(Vehicle, request.vehicle_id)
            if vehicle.current_occupancy >= vehicle.capacity:
                raise CapacityError(
                    f"Vehicle {vehicle.name} is full ({vehicle.current_occupancy}/{vehicle.capacity})",
                    {"vehicle_id": str(vehicle.id), "capacity": vehicle.capacity}
                )

            event = self._build_event(request, RidershipEventType.CHECK_IN, subscription.route_id, moment, day)
            async with self.repository.transaction():
                if await self.repository.insert_if_absent(event, RIDERSHIP_KEY) is None:
                    raise ConflictError(
                        "Student already checked in today",
                        {"student_id": str(request.student_id), "service_date": day.isoformat()}
                    )
                await self.repository.update(vehicle, current_occupancy=vehicle.current_occupancy + 1)

        logger.info(f"Student {request.student_id} checked in on vehicle {vehicle.name} at stop {stop.name}")
        self.bus.publish(EventType.STUDENT_CHECKED_IN, self._event_payload(event, vehicle))
        return event

    async def check_out(self, request: CheckRequest) -> RidershipEvent:
        moment = as_utc(request.timestamp) if request.timestamp else self.clock()
        day = service_date(moment)

        await self.repository.require(Vehicle, request.vehicle_id)
        stop = await self.repository.require(Stop, request.stop_id)

        async with self._locks[request.vehicle_id]:
            events = await self.events_for_day(request.student_id, day)
            check_in = events.get(RidershipEventType.CHECK_IN)
            if check_in is None:
                raise StateError(
                    "Student has not checked in today",
                    {"student_id": str(request.student_id), "service_date": day.isoformat()}
                )
            if RidershipEventType.CHECK_OUT in events:
                raise ConflictError(
                    "Student already checked out today",
                    {"student_id": str(request.student_id), "service_date": day.isoformat()}
                )
            if check_in.vehicle_id != request.vehicle_id:
                raise ConflictError(
                    "Student must check out of the vehicle they boarded",
                    {
                        "student_id": str(request.student_id),
                        "boarded_vehicle_id": str(check_in.vehicle_id),
                        "vehicle_id": str(request.vehicle_id)
                    }
                )

            vehicle = await self.repository.require(Vehicle, request.vehicle_id)
            event = self._build_event(request, RidershipEventType.CHECK_OUT, check_in.route_id, moment, day)
            async with self.repository.transaction():
                if await self.repository.insert_if_absent(event, RIDERSHIP_KEY) is None:
                    raise ConflictError(
                        "Student already checked out today",
                        {"student_id": str(request.student_id), "service_date": day.isoformat()}
                    )
                await self.repository.update(
                    vehicle, current_occupancy=max(vehicle.current_occupancy - 1, 0)
                )

        logger.info(f"Student {request.student_id} checked out of vehicle {vehicle.name} at stop {stop.name}")
        self.bus.publish(EventType.STUDENT_CHECKED_OUT, self._event_payload(event, vehicle))
        return event

    def _build_event(
        self,
        request: CheckRequest,
        event_type: RidershipEventType,
        route_id: uuid.UUID,
        moment: datetime,
        day: date
    ) -> RidershipEvent:
        return RidershipEvent(
            student_id=request.student_id,
            vehicle_id=request.vehicle_id,
            stop_id=request.stop_id,
            route_id=route_id,
            event_type=event_type,
            event_timestamp=moment,
            service_date=day,
            validation_method=request.validation_method,
            validation_data=request.validation_data,
            is_automated=request.validation_method != ValidationMethod.MANUAL,
            recorded_by=request.recorded_by
        )

    @staticmethod
    def _event_payload(event: RidershipEvent, vehicle: Vehicle) -> Dict[str, Any]:
        return {
            "student_id": str(event.student_id),
            "vehicle_id": str(event.vehicle_id),
            "stop_id": str(event.stop_id),
            "route_id": str(event.route_id),
            "event_timestamp": as_utc(event.event_timestamp).isoformat(),
            "service_date": event.service_date.isoformat(),
            "validation_method": event.validation_method.value,
            "is_automated": event.is_automated,
            "occupancy": vehicle.current_occupancy
        }

    async def student_status(self, student_id: uuid.UUID, at: Optional[datetime] = None) -> StudentTransportStatus:
        """Where a student is in today's journey, derived from ridership and the bus's live state"""
        day = service_date(as_utc(at) if at else self.clock())
        events = await self.events_for_day(student_id, day)

        if RidershipEventType.CHECK_OUT in events:
            return StudentTransportStatus.ARRIVED_AT_SCHOOL

        check_in = events.get(RidershipEventType.CHECK_IN)
        if check_in is not None:
            state = await self.ingestor.current_state(check_in.vehicle_id)
            if state.is_moving:
                return StudentTransportStatus.ON_BUS_TRAVELING
            return StudentTransportStatus.ON_BUS_WAITING

        subscriptions = await self.active_subscriptions(student_id)
        if not subscriptions:
            raise NotFoundError(
                "Student has no active transport subscription",
                {"student_id": str(student_id)}
            )

        for subscription in subscriptions:
            vehicle = await self.fleet.current_vehicle_for_route(subscription.route_id, day)
            if vehicle is None:
                continue
            state = await self.ingestor.current_state(vehicle.id)
            if state.status != TrackingStatus.OFFLINE:
                return StudentTransportStatus.BUS_APPROACHING

        return StudentTransportStatus.WAITING_FOR_PICKUP

    async def bus_roster(self, route_id: uuid.UUID, vehicle_id: uuid.UUID, day: Optional[date] = None) -> BusRoster:
        await self.repository.require(Route, route_id)
        await self.repository.require(Vehicle, vehicle_id)
        day = day or service_date(self.clock())

        subscriptions = await self.repository.find(
            StudentSubscription, route_id=route_id, status=SubscriptionStatus.ACTIVE
        )
        events = await self.repository.find(
            RidershipEvent, route_id=route_id, vehicle_id=vehicle_id, service_date=day
        )
        checked_in = {e.student_id for e in events if e.event_type == RidershipEventType.CHECK_IN}
        checked_out = {e.student_id for e in events if e.event_type == RidershipEventType.CHECK_OUT}

        students = [
            RosterEntry(
                student_id=s.student_id,
                pickup_stop_id=s.pickup_stop_id,
                dropoff_stop_id=s.dropoff_stop_id,
                checked_in=s.student_id in checked_in,
                checked_out=s.student_id in checked_out
            )
            for s in subscriptions
        ]

        return BusRoster(
            route_id=route_id,
            vehicle_id=vehicle_id,
            service_date=day,
            total_students=len(students),
            checked_in=sum(1 for s in students if s.checked_in),
            checked_out=sum(1 for s in students if s.checked_out),
            no_shows=sum(1 for s in students if not s.checked_in),
            students=students
        )
