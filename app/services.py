from typing import Annotated

from fastapi import Depends, Request

from app.core.clock import Clock, utc_now
from app.core.events import EventBus
from app.core.fleet import FleetAssignments
from app.core.incidents import IncidentCoordinator
from app.core.ridership import RidershipTracker
from app.core.route_optimizer import RouteOptimizer
from app.core.shifts import DriverShiftManager
from app.core.tracking import LocationIngestor
from app.repository import Repository


class TransportServices:
    """The transport core wired around one repository, event bus and clock"""

    def __init__(self, repository: Repository, bus: EventBus, clock: Clock = utc_now):
        self.repository = repository
        self.bus = bus
        self.clock = clock

        self.routes = RouteOptimizer(repository)
        self.tracking = LocationIngestor(repository, bus, clock=clock)
        self.fleet = FleetAssignments(repository, clock=clock)
        self.ridership = RidershipTracker(repository, bus, self.fleet, self.tracking, clock=clock)
        self.incidents = IncidentCoordinator(repository, bus, clock=clock)
        self.shifts = DriverShiftManager(repository, clock=clock)


def get_services(request: Request) -> TransportServices:
    return request.app.state.services

ServicesDep = Annotated[TransportServices, Depends(get_services)]
