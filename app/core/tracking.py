"""
Vehicle position ingestion.

Each report is validated, classified (moving / stopped / at_stop), matched
against the route's stop geofences and appended to the location log. Work
for one vehicle is serialized behind its own lock so concurrent reports
from the same device never interleave; different vehicles run in parallel.
"""

import asyncio
import logging
import math
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from app.config import settings
from app.core.clock import Clock, as_utc, utc_now
from app.core.errors import ValidationError
from app.core.events import EventBus, EventType
from app.core.geofencing import GeoPoint, distance, is_within_geofence, validate_coordinates
from app.models.fleet import Vehicle
from app.models.location import (
    LocationReport,
    LocationSample,
    RouteProgress,
    TrackingStatus,
    VehicleState,
)
from app.models.route import Route, Stop
from app.repository import Repository

logger = logging.getLogger(__name__)


def estimate_eta_minutes(
    position: GeoPoint,
    target: GeoPoint,
    speed_kmh: float,
    min_speed_kmh: Optional[float] = None
) -> int:
    """Minutes to target at the reported speed, floored so a parked bus still gets an ETA"""
    floor = min_speed_kmh if min_speed_kmh is not None else settings.ETA_MIN_SPEED_KMH
    effective_speed = max(speed_kmh, floor)
    return int(round(distance(position, target) / effective_speed * 60))


def next_stop_after(stops: Sequence[Stop], current_stop_id: Optional[uuid.UUID]) -> Optional[Stop]:
    """First stop ordered after the current one; the route's first stop when there is no current stop"""
    if not stops:
        return None
    if current_stop_id is None:
        return stops[0]

    current = next((stop for stop in stops if stop.id == current_stop_id), None)
    if current is None:
        return stops[0]
    return next((stop for stop in stops if stop.stop_order > current.stop_order), None)


class LocationIngestor:
    def __init__(
        self,
        repository: Repository,
        bus: EventBus,
        clock: Clock = utc_now,
        geofence_radius_meters: Optional[float] = None,
        offline_after_minutes: Optional[int] = None
    ):
        self.repository = repository
        self.bus = bus
        self.clock = clock
        self.geofence_radius_meters = geofence_radius_meters or settings.GEOFENCE_RADIUS_METERS
        self.offline_after = timedelta(minutes=offline_after_minutes or settings.OFFLINE_AFTER_MINUTES)
        self._locks: Dict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def ingest(self, report: LocationReport) -> LocationSample:
        errors = validate_coordinates(report.latitude, report.longitude)
        if not math.isfinite(report.speed_kmh) or report.speed_kmh < 0:
            errors.append("Invalid speed: must be a finite, non-negative number")
        if report.heading is not None and not math.isfinite(report.heading):
            errors.append("Invalid heading: must be a finite number")
        if errors:
            raise ValidationError("; ".join(errors), {"vehicle_id": str(report.vehicle_id)})

        async with self._locks[report.vehicle_id]:
            return await self._ingest_serialized(report)

    async def _ingest_serialized(self, report: LocationReport) -> LocationSample:
        await self.repository.require(Vehicle, report.vehicle_id)
        await self.repository.require(Route, report.route_id)

        stops = await self.repository.find(Stop, order_by="stop_order", route_id=report.route_id)
        previous = await self.repository.latest(
            LocationSample, "recorded_at", vehicle_id=report.vehicle_id
        )

        position = GeoPoint(report.latitude, report.longitude)
        status = TrackingStatus.MOVING if report.speed_kmh > 0 else TrackingStatus.STOPPED

        arrived_at: Optional[Stop] = None
        for stop in stops:
            if is_within_geofence(position, GeoPoint(stop.latitude, stop.longitude), self.geofence_radius_meters):
                arrived_at = stop
                status = TrackingStatus.AT_STOP
                break

        current_stop_id = arrived_at.id if arrived_at else report.current_stop_id
        if current_stop_id is None and previous is not None and previous.route_id == report.route_id:
            current_stop_id = previous.current_stop_id

        if report.next_stop_id is not None:
            next_stop = next((stop for stop in stops if stop.id == report.next_stop_id), None)
            next_stop_id = report.next_stop_id
        else:
            next_stop = next_stop_after(stops, current_stop_id)
            next_stop_id = next_stop.id if next_stop else None

        eta = None
        if next_stop is not None:
            eta = estimate_eta_minutes(
                position, GeoPoint(next_stop.latitude, next_stop.longitude), report.speed_kmh
            )

        sample = LocationSample(
            vehicle_id=report.vehicle_id,
            route_id=report.route_id,
            latitude=report.latitude,
            longitude=report.longitude,
            speed_kmh=report.speed_kmh,
            heading=report.heading,
            status=status,
            current_stop_id=current_stop_id,
            next_stop_id=next_stop_id,
            eta_minutes=eta,
            recorded_at=as_utc(report.timestamp) if report.timestamp else self.clock()
        )
        await self.repository.create(sample)

        if arrived_at is not None:
            logger.info(f"Vehicle {report.vehicle_id} arrived at stop {arrived_at.name} ({arrived_at.id})")
            self.bus.publish(EventType.BUS_ARRIVED_AT_STOP, {
                "vehicle_id": str(report.vehicle_id),
                "route_id": str(report.route_id),
                "stop_id": str(arrived_at.id),
                "stop_name": arrived_at.name,
                "stop_order": arrived_at.stop_order,
                "arrived_at": sample.recorded_at.isoformat()
            })

        self.bus.publish(EventType.LOCATION_UPDATED, sample_payload(sample))
        return sample

    def is_stale(self, sample: LocationSample) -> bool:
        return self.clock() - as_utc(sample.recorded_at) > self.offline_after

    def state_from_sample(self, sample: LocationSample) -> VehicleState:
        return VehicleState(
            vehicle_id=sample.vehicle_id,
            route_id=sample.route_id,
            latitude=sample.latitude,
            longitude=sample.longitude,
            speed_kmh=sample.speed_kmh,
            heading=sample.heading,
            status=TrackingStatus.OFFLINE if self.is_stale(sample) else sample.status,
            recorded_status=sample.status,
            current_stop_id=sample.current_stop_id,
            next_stop_id=sample.next_stop_id,
            eta_minutes=sample.eta_minutes,
            last_updated=as_utc(sample.recorded_at)
        )

    async def current_state(self, vehicle_id: uuid.UUID) -> VehicleState:
        """Latest state of a vehicle; offline when it never reported or went quiet"""
        await self.repository.require(Vehicle, vehicle_id)
        sample = await self.repository.latest(LocationSample, "recorded_at", vehicle_id=vehicle_id)
        if sample is None:
            return VehicleState(vehicle_id=vehicle_id)
        return self.state_from_sample(sample)

    async def active_vehicles(self) -> List[VehicleState]:
        states = []
        for vehicle in await self.repository.find(Vehicle):
            state = await self.current_state(vehicle.id)
            if state.status != TrackingStatus.OFFLINE:
                states.append(state)
        return states

    async def route_progress(self, route_id: uuid.UUID) -> RouteProgress:
        await self.repository.require(Route, route_id)
        stops = await self.repository.find(Stop, order_by="stop_order", route_id=route_id)
        sample = await self.repository.latest(LocationSample, "recorded_at", route_id=route_id)

        if sample is None:
            return RouteProgress(route_id=route_id, stops_remaining=len(stops))

        current = next((stop for stop in stops if stop.id == sample.current_stop_id), None)
        completed = current.stop_order if current else 0
        remaining = len(stops) - completed

        return RouteProgress(
            route_id=route_id,
            vehicle_id=sample.vehicle_id,
            current_location=self.state_from_sample(sample),
            progress_percentage=round(completed / len(stops) * 100, 2) if stops else 0.0,
            stops_completed=completed,
            stops_remaining=remaining,
            estimated_completion=self.clock() + timedelta(
                minutes=remaining * settings.MINUTES_PER_REMAINING_STOP
            )
        )

    async def tracking_history(
        self,
        vehicle_id: uuid.UUID,
        since: Optional[datetime] = None,
        limit: Optional[int] = None
    ) -> List[LocationSample]:
        """Samples newest first, bounded by age and count"""
        await self.repository.require(Vehicle, vehicle_id)
        since = as_utc(since) if since else self.clock() - timedelta(hours=settings.TRACKING_HISTORY_HOURS)

        samples = await self.repository.find(
            LocationSample,
            order_by="recorded_at",
            descending=True,
            limit=limit or settings.TRACKING_HISTORY_LIMIT,
            vehicle_id=vehicle_id
        )
        return [sample for sample in samples if as_utc(sample.recorded_at) >= since]


def sample_payload(sample: LocationSample) -> Dict[str, Any]:
    return {
        "vehicle_id": str(sample.vehicle_id),
        "route_id": str(sample.route_id),
        "latitude": sample.latitude,
        "longitude": sample.longitude,
        "speed_kmh": sample.speed_kmh,
        "heading": sample.heading,
        "status": sample.status.value,
        "current_stop_id": str(sample.current_stop_id) if sample.current_stop_id else None,
        "next_stop_id": str(sample.next_stop_id) if sample.next_stop_id else None,
        "eta_minutes": sample.eta_minutes,
        "recorded_at": as_utc(sample.recorded_at).isoformat()
    }
