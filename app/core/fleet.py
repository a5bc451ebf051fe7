import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import date
from typing import Dict, List, Optional

from app.core.clock import Clock, service_date, utc_now
from app.core.errors import CapacityError, ConflictError, StateError, ValidationError
from app.models.fleet import (
    LIVE_ASSIGNMENT_STATUSES,
    AssignmentStatus,
    RouteAssignment,
    RouteAssignmentCreate,
    Vehicle,
    VehicleStatus,
)
from app.models.ridership import StudentSubscription, SubscriptionStatus
from app.models.route import Route
from app.repository import Repository

logger = logging.getLogger(__name__)


class FleetAssignments:
    """Binds a vehicle and driver to a route for a validity window"""

    def __init__(self, repository: Repository, clock: Clock = utc_now):
        self.repository = repository
        self.clock = clock
        self._locks: Dict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def assign(self, data: RouteAssignmentCreate) -> RouteAssignment:
        if data.valid_until is not None and data.valid_until < data.valid_from:
            raise ValidationError(
                "valid_until must not be before valid_from",
                {"valid_from": data.valid_from.isoformat(), "valid_until": data.valid_until.isoformat()}
            )

        async with self._locks[data.vehicle_id]:
            vehicle = await self.repository.require(Vehicle, data.vehicle_id)
            if vehicle.status != VehicleStatus.ACTIVE:
                raise StateError(
                    f"Vehicle {vehicle.name} is {vehicle.status.value} and cannot be assigned",
                    {"vehicle_id": str(vehicle.id), "status": vehicle.status.value}
                )

            await self.repository.require(Route, data.route_id)

            live = await self.repository.find(
                RouteAssignment,
                vehicle_id=data.vehicle_id,
                status=list(LIVE_ASSIGNMENT_STATUSES)
            )
            clash = next((a for a in live if a.overlaps(data.valid_from, data.valid_until)), None)
            if clash is not None:
                raise ConflictError(
                    "Vehicle already has a live assignment in this period",
                    {"vehicle_id": str(data.vehicle_id), "assignment_id": str(clash.id)}
                )

            subscribers = await self.repository.find(
                StudentSubscription, route_id=data.route_id, status=SubscriptionStatus.ACTIVE
            )
            if len(subscribers) > vehicle.capacity:
                raise CapacityError(
                    f"Route has {len(subscribers)} active students, vehicle seats {vehicle.capacity}",
                    {"route_id": str(data.route_id), "students": len(subscribers), "capacity": vehicle.capacity}
                )

            assignment = RouteAssignment(**data.model_dump())
            await self.repository.create(assignment)

        logger.info(f"Vehicle {vehicle.name} assigned to route {data.route_id} from {data.valid_from}")
        return assignment

    async def live_assignments_for_route(self, route_id: uuid.UUID, on: Optional[date] = None) -> List[RouteAssignment]:
        on = on or service_date(self.clock())
        assignments = await self.repository.find(
            RouteAssignment, route_id=route_id, status=list(LIVE_ASSIGNMENT_STATUSES)
        )
        return [a for a in assignments if a.covers(on)]

    async def current_vehicle_for_route(self, route_id: uuid.UUID, on: Optional[date] = None) -> Optional[Vehicle]:
        """Vehicle serving the route on the given date, preferring one that is out on a run"""
        assignments = await self.live_assignments_for_route(route_id, on)
        if not assignments:
            return None

        assignments.sort(key=lambda a: a.status != AssignmentStatus.IN_PROGRESS)
        return await self.repository.get(Vehicle, assignments[0].vehicle_id)
