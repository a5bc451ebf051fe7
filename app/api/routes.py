from fastapi import APIRouter
from typing import Any, List
import uuid

from app.services import ServicesDep
from app.core.geofencing import stop_geofence
from app.models.location import RouteProgress
from app.models.route import (
    OptimizationResult, Route, RouteCreate, Stop, StopCreate, StopRelocate
)

router = APIRouter()

@router.post("/", response_model=Route)
async def create_route(services: ServicesDep, data: RouteCreate):
    route = Route(**data.model_dump())
    return await services.repository.create(route)

@router.get("/{route_id}", response_model=Route)
async def get_route(services: ServicesDep, route_id: uuid.UUID):
    return await services.repository.require(Route, route_id)

@router.get("/{route_id}/stops", response_model=List[Stop])
async def get_route_stops(services: ServicesDep, route_id: uuid.UUID) -> list[Any]:
    await services.repository.require(Route, route_id)
    return await services.routes.ordered_stops(route_id)

@router.post("/{route_id}/stops", response_model=Stop)
async def add_stop(services: ServicesDep, route_id: uuid.UUID, data: StopCreate):
    return await services.routes.add_stop(route_id, data)

@router.put("/stops/{stop_id}/location", response_model=Stop)
async def relocate_stop(services: ServicesDep, stop_id: uuid.UUID, data: StopRelocate):
    return await services.routes.relocate_stop(stop_id, data.latitude, data.longitude)

@router.delete("/stops/{stop_id}")
async def remove_stop(services: ServicesDep, stop_id: uuid.UUID) -> dict[str, Any]:
    await services.routes.remove_stop(stop_id)
    return {"message": "Stop removed", "stop_id": str(stop_id)}

@router.get("/stops/{stop_id}/geofence")
async def get_stop_geofence(services: ServicesDep, stop_id: uuid.UUID) -> dict[str, Any]:
    """Circular geofence around a stop, for map display"""
    stop = await services.repository.require(Stop, stop_id)
    return stop_geofence(stop.latitude, stop.longitude)

@router.post("/{route_id}/optimize", response_model=OptimizationResult)
async def optimize_route(services: ServicesDep, route_id: uuid.UUID):
    return await services.routes.optimize(route_id)

@router.get("/{route_id}/progress", response_model=RouteProgress)
async def get_route_progress(services: ServicesDep, route_id: uuid.UUID):
    return await services.tracking.route_progress(route_id)
