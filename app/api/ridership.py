from fastapi import APIRouter
from typing import Any, Optional
from datetime import date, datetime
import uuid

from app.services import ServicesDep
from app.models.ridership import (
    BusRoster, CheckRequest, QrCodeScan, RidershipEvent, StudentSubscription, StudentSubscriptionCreate
)

router = APIRouter()

@router.post("/subscriptions", response_model=StudentSubscription)
async def create_subscription(services: ServicesDep, data: StudentSubscriptionCreate):
    return await services.ridership.subscribe(data)

@router.post("/qr/validate", response_model=StudentSubscription)
async def validate_qr_code(services: ServicesDep, scan: QrCodeScan):
    return await services.ridership.validate_qr_code(scan.qr_code)

@router.post("/check-in", response_model=RidershipEvent)
async def check_in(services: ServicesDep, request: CheckRequest):
    return await services.ridership.check_in(request)

@router.post("/check-out", response_model=RidershipEvent)
async def check_out(services: ServicesDep, request: CheckRequest):
    return await services.ridership.check_out(request)

@router.get("/students/{student_id}/status")
async def get_student_status(
    services: ServicesDep,
    student_id: uuid.UUID,
    at: Optional[datetime] = None
) -> dict[str, Any]:
    status = await services.ridership.student_status(student_id, at)
    return {"student_id": str(student_id), "status": status}

@router.get("/roster", response_model=BusRoster)
async def get_bus_roster(
    services: ServicesDep,
    route_id: uuid.UUID,
    vehicle_id: uuid.UUID,
    service_date: Optional[date] = None
):
    return await services.ridership.bus_roster(route_id, vehicle_id, service_date)
