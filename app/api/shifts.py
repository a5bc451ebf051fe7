from fastapi import APIRouter
from typing import Any
import uuid

from app.services import ServicesDep
from app.models.shift import ShiftLog, ShiftTelemetry

router = APIRouter()

@router.post("/start", response_model=ShiftLog)
async def start_route(services: ServicesDep, telemetry: ShiftTelemetry):
    return await services.shifts.start_route(telemetry)

@router.post("/end", response_model=ShiftLog)
async def end_route(services: ServicesDep, telemetry: ShiftTelemetry):
    return await services.shifts.end_route(telemetry)

@router.get("/drivers/{driver_id}/active")
async def get_active_shift(services: ServicesDep, driver_id: uuid.UUID) -> dict[str, Any]:
    return {"shift": await services.shifts.active_shift(driver_id)}
