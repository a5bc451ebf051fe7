from fastapi import APIRouter
from typing import Any, Optional
from datetime import date
import uuid

from app.services import ServicesDep
from app.models.fleet import RouteAssignment, RouteAssignmentCreate, Vehicle, VehicleCreate

router = APIRouter()

@router.post("/vehicles", response_model=Vehicle)
async def register_vehicle(services: ServicesDep, data: VehicleCreate):
    vehicle = Vehicle(**data.model_dump())
    return await services.repository.create(vehicle)

@router.get("/vehicles/{vehicle_id}", response_model=Vehicle)
async def get_vehicle(services: ServicesDep, vehicle_id: uuid.UUID):
    return await services.repository.require(Vehicle, vehicle_id)

@router.post("/assignments", response_model=RouteAssignment)
async def assign_vehicle(services: ServicesDep, data: RouteAssignmentCreate):
    return await services.fleet.assign(data)

@router.get("/routes/{route_id}/vehicle")
async def get_route_vehicle(
    services: ServicesDep,
    route_id: uuid.UUID,
    on: Optional[date] = None
) -> dict[str, Any]:
    vehicle = await services.fleet.current_vehicle_for_route(route_id, on)
    return {"route_id": str(route_id), "vehicle": vehicle}
