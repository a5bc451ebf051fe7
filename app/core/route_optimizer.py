"""
Stop ordering for school bus routes.

The optimizer is a greedy nearest-neighbor pass, not an optimal tour; each
step scans every unvisited stop.
"""

import logging
import uuid
from typing import List, Optional, Sequence, Tuple

from app.config import settings
from app.core.errors import StateError, ValidationError
from app.core.geofencing import GeoPoint, distance, validate_coordinates
from app.models.ridership import StudentSubscription, SubscriptionStatus
from app.models.route import (
    OptimizationResult,
    Route,
    Stop,
    StopCreate,
    StopOrderEntry,
)
from app.repository import Repository

logger = logging.getLogger(__name__)

MIN_STOPS_TO_OPTIMIZE = 3


def nearest_neighbor_order(points: Sequence[GeoPoint]) -> List[int]:
    """
    Visit order (indices into points) starting from points[0].

    At each step the closest unvisited point to the last placed one is
    taken; on equal distance the lower index wins.
    """
    if not points:
        return []

    unvisited = set(range(1, len(points)))
    order = [0]

    while unvisited:
        last = points[order[-1]]
        nearest_index = None
        shortest = float("inf")

        for index in sorted(unvisited):
            candidate = distance(last, points[index])
            if candidate < shortest:
                shortest = candidate
                nearest_index = index

        order.append(nearest_index)
        unvisited.remove(nearest_index)

    return order


def path_distance(points: Sequence[GeoPoint]) -> float:
    """Sum of consecutive great-circle distances in km"""
    return sum(distance(points[i], points[i + 1]) for i in range(len(points) - 1))


def estimate_duration_minutes(distance_km: float, average_speed_kmh: Optional[float] = None) -> int:
    speed = average_speed_kmh or settings.ROUTE_AVERAGE_SPEED_KMH
    return int(round(distance_km / speed * 60))


class RouteOptimizer:
    """Reorders route stops and keeps route totals consistent with stop order"""

    def __init__(self, repository: Repository, average_speed_kmh: Optional[float] = None):
        self.repository = repository
        self.average_speed_kmh = average_speed_kmh or settings.ROUTE_AVERAGE_SPEED_KMH

    async def ordered_stops(self, route_id: uuid.UUID) -> List[Stop]:
        return await self.repository.find(Stop, order_by="stop_order", route_id=route_id)

    async def optimize(self, route_id: uuid.UUID) -> OptimizationResult:
        route = await self.repository.require(Route, route_id)
        stops = await self.ordered_stops(route_id)

        if len(stops) < MIN_STOPS_TO_OPTIMIZE:
            raise StateError(
                f"Route must have at least {MIN_STOPS_TO_OPTIMIZE} stops to optimize",
                {"route_id": str(route_id), "stop_count": len(stops)}
            )

        points = [GeoPoint(stop.latitude, stop.longitude) for stop in stops]
        original_distance = path_distance(points)

        order = nearest_neighbor_order(points)
        optimized_distance = path_distance([points[i] for i in order])

        if optimized_distance > original_distance:
            # Greedy pass lost to the current order; keep what we have
            logger.info(
                f"Route {route_id}: nearest-neighbor order is longer "
                f"({optimized_distance:.3f} km > {original_distance:.3f} km), keeping current order"
            )
            order = list(range(len(stops)))
            optimized_distance = original_distance

        optimized_stops = [stops[i] for i in order]
        duration = estimate_duration_minutes(optimized_distance, self.average_speed_kmh)

        async with self.repository.transaction():
            await self._apply_order(optimized_stops)
            await self.repository.update(
                route,
                total_distance_km=optimized_distance,
                estimated_duration_minutes=duration
            )

        saved = original_distance - optimized_distance
        logger.info(
            f"Optimized route {route_id}: {original_distance:.2f} km -> {optimized_distance:.2f} km"
        )

        return OptimizationResult(
            route_id=route_id,
            original_distance=round(original_distance, 2),
            optimized_distance=round(optimized_distance, 2),
            distance_saved=round(saved, 2),
            percentage_saved=round(saved / original_distance * 100, 2) if original_distance > 0 else 0.0,
            estimated_duration_minutes=duration,
            total_stops=len(optimized_stops),
            optimized_stops=[
                StopOrderEntry(
                    id=stop.id,
                    name=stop.name,
                    new_order=position,
                    latitude=stop.latitude,
                    longitude=stop.longitude
                )
                for position, stop in enumerate(optimized_stops, start=1)
            ]
        )

    async def recalculate(self, route_id: uuid.UUID) -> Route:
        """Recompute total distance and duration from the current stop order"""
        route = await self.repository.require(Route, route_id)
        stops = await self.ordered_stops(route_id)
        total = path_distance([GeoPoint(stop.latitude, stop.longitude) for stop in stops])

        return await self.repository.update(
            route,
            total_distance_km=total,
            estimated_duration_minutes=estimate_duration_minutes(total, self.average_speed_kmh)
        )

    async def add_stop(self, route_id: uuid.UUID, data: StopCreate) -> Stop:
        """Append a stop at position N+1"""
        await self.repository.require(Route, route_id)
        self._check_coordinates(data.latitude, data.longitude)

        async with self.repository.transaction():
            stops = await self.ordered_stops(route_id)
            stop = Stop(
                route_id=route_id,
                name=data.name,
                latitude=data.latitude,
                longitude=data.longitude,
                stop_order=len(stops) + 1
            )
            await self.repository.create(stop)
            await self.recalculate(route_id)

        logger.info(f"Stop {stop.name} added to route {route_id} at position {stop.stop_order}")
        return stop

    async def remove_stop(self, stop_id: uuid.UUID) -> None:
        stop = await self.repository.require(Stop, stop_id)

        in_use = [
            subscription
            for subscription in await self.repository.find(
                StudentSubscription,
                route_id=stop.route_id,
                status=SubscriptionStatus.ACTIVE
            )
            if stop_id in (subscription.pickup_stop_id, subscription.dropoff_stop_id)
        ]
        if in_use:
            raise StateError(
                "Cannot remove a stop used by active student subscriptions",
                {"stop_id": str(stop_id), "subscriptions": len(in_use)}
            )

        async with self.repository.transaction():
            remaining = [s for s in await self.ordered_stops(stop.route_id) if s.id != stop_id]
            # Park the removed stop outside the 1..N range so the new order stays unique
            await self.repository.update(stop, stop_order=-abs(stop.stop_order) - len(remaining) - 1)
            await self._apply_order(remaining)
            await self.repository.delete(stop)
            await self.recalculate(stop.route_id)

        logger.info(f"Stop {stop_id} removed from route {stop.route_id}")

    async def relocate_stop(self, stop_id: uuid.UUID, latitude: float, longitude: float) -> Stop:
        stop = await self.repository.require(Stop, stop_id)
        self._check_coordinates(latitude, longitude)

        async with self.repository.transaction():
            await self.repository.update(stop, latitude=latitude, longitude=longitude)
            await self.recalculate(stop.route_id)

        return stop

    async def _apply_order(self, ordered: Sequence[Stop]):
        """Renumber stops 1..N in the given order, two passes to respect the unique index"""
        changes: List[Tuple[Stop, int]] = [
            (stop, position) for position, stop in enumerate(ordered, start=1)
            if stop.stop_order != position
        ]
        for stop, position in changes:
            await self.repository.update(stop, stop_order=-position)
        for stop, position in changes:
            await self.repository.update(stop, stop_order=position)

    def _check_coordinates(self, latitude: float, longitude: float):
        errors = validate_coordinates(latitude, longitude)
        if errors:
            raise ValidationError("; ".join(errors), {"latitude": latitude, "longitude": longitude})
