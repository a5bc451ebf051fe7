from fastapi import APIRouter
from typing import Any, List, Optional
from datetime import datetime
import uuid

from app.services import ServicesDep
from app.models.location import LocationReport, LocationSample, VehicleState

router = APIRouter()

@router.post("/update")
async def update_location(
    services: ServicesDep,
    report: LocationReport
) -> dict[str, Any]:
    sample = await services.tracking.ingest(report)

    return {
        "message": "Location updated successfully",
        "status": sample.status,
        "current_stop_id": sample.current_stop_id,
        "next_stop_id": sample.next_stop_id,
        "eta_minutes": sample.eta_minutes
    }

@router.get("/active", response_model=List[VehicleState])
async def get_active_vehicles(services: ServicesDep) -> list[Any]:
    """Vehicles that reported recently enough to count as online"""
    return await services.tracking.active_vehicles()

@router.get("/vehicles/{vehicle_id}", response_model=VehicleState)
async def get_vehicle_state(services: ServicesDep, vehicle_id: uuid.UUID):
    return await services.tracking.current_state(vehicle_id)

@router.get("/vehicles/{vehicle_id}/history", response_model=List[LocationSample])
async def get_tracking_history(
    services: ServicesDep,
    vehicle_id: uuid.UUID,
    since: Optional[datetime] = None,
    limit: Optional[int] = None
) -> list[Any]:
    return await services.tracking.tracking_history(vehicle_id, since=since, limit=limit)
