from fastapi import APIRouter
from typing import Any, List, Optional
import uuid

from app.services import ServicesDep
from app.models.incident import (
    Incident, IncidentAssign, IncidentReport, IncidentResolve, IncidentStatistics
)

router = APIRouter()

@router.post("/", response_model=Incident)
async def report_incident(services: ServicesDep, report: IncidentReport):
    return await services.incidents.create(report)

@router.get("/open", response_model=List[Incident])
async def get_open_incidents(
    services: ServicesDep,
    vehicle_id: Optional[uuid.UUID] = None
) -> list[Any]:
    return await services.incidents.list_open(vehicle_id)

@router.get("/statistics", response_model=IncidentStatistics)
async def get_incident_statistics(
    services: ServicesDep,
    vehicle_id: Optional[uuid.UUID] = None
):
    return await services.incidents.statistics(vehicle_id)

@router.get("/{incident_id}", response_model=Incident)
async def get_incident(services: ServicesDep, incident_id: uuid.UUID):
    return await services.repository.require(Incident, incident_id)

@router.get("/{incident_id}/timeline")
async def get_incident_timeline(services: ServicesDep, incident_id: uuid.UUID) -> dict[str, Any]:
    return {"timeline": await services.incidents.timeline(incident_id)}

@router.put("/{incident_id}/assign", response_model=Incident)
async def assign_incident(services: ServicesDep, incident_id: uuid.UUID, data: IncidentAssign):
    return await services.incidents.assign(incident_id, data.assignee)

@router.put("/{incident_id}/resolve", response_model=Incident)
async def resolve_incident(services: ServicesDep, incident_id: uuid.UUID, data: IncidentResolve):
    return await services.incidents.resolve(incident_id, data.resolution_notes)
