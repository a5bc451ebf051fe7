"""
Incident lifecycle: reported -> investigating -> resolved.

Critical incidents are handed straight to the emergency-response role and
raise one emergency alert. Notification fan-out goes through the event bus,
so a slow or failing channel never holds up or undoes the incident write.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional

from app.config import settings
from app.core.clock import Clock, as_utc, service_date, utc_now
from app.core.errors import StateError, ValidationError
from app.core.events import EventBus, EventType
from app.core.geofencing import validate_coordinates
from app.models.fleet import Vehicle
from app.models.incident import (
    Incident,
    IncidentReport,
    IncidentSeverity,
    IncidentStatistics,
    IncidentStatus,
)
from app.models.route import Route
from app.repository import Repository

logger = logging.getLogger(__name__)

SEVERITY_RANK = {
    IncidentSeverity.CRITICAL: 0,
    IncidentSeverity.HIGH: 1,
    IncidentSeverity.MEDIUM: 2,
    IncidentSeverity.LOW: 3,
}


def parse_severity(value: str) -> IncidentSeverity:
    try:
        return IncidentSeverity(value.strip().lower())
    except (ValueError, AttributeError):
        raise ValidationError(
            f"Invalid severity: {value!r}",
            {"allowed": [severity.value for severity in IncidentSeverity]}
        )


def incident_payload(incident: Incident) -> Dict[str, Any]:
    return {
        "incident_id": str(incident.id),
        "vehicle_id": str(incident.vehicle_id),
        "route_id": str(incident.route_id) if incident.route_id else None,
        "incident_type": incident.incident_type.value,
        "severity": incident.severity.value,
        "status": incident.status.value,
        "title": incident.title,
        "description": incident.description,
        "location": {
            "latitude": incident.latitude,
            "longitude": incident.longitude
        },
        "affected_student_ids": list(incident.affected_student_ids or []),
        "assigned_to": incident.assigned_to,
        "occurred_at": as_utc(incident.occurred_at).isoformat()
    }


class IncidentCoordinator:
    def __init__(
        self,
        repository: Repository,
        bus: EventBus,
        clock: Clock = utc_now,
        emergency_role: Optional[str] = None
    ):
        self.repository = repository
        self.bus = bus
        self.clock = clock
        self.emergency_role = emergency_role or settings.EMERGENCY_RESPONSE_ROLE

    async def create(self, report: IncidentReport) -> Incident:
        severity = parse_severity(report.severity)

        if report.latitude is not None and report.longitude is not None:
            errors = validate_coordinates(report.latitude, report.longitude)
            if errors:
                raise ValidationError("; ".join(errors))

        await self.repository.require(Vehicle, report.vehicle_id)
        if report.route_id is not None:
            await self.repository.require(Route, report.route_id)

        now = self.clock()
        incident = Incident(
            vehicle_id=report.vehicle_id,
            route_id=report.route_id,
            incident_type=report.incident_type,
            severity=severity,
            title=report.title or f"{report.incident_type.value.title()} incident",
            description=report.description,
            latitude=report.latitude,
            longitude=report.longitude,
            affected_student_ids=[str(student_id) for student_id in report.affected_student_ids],
            reported_by=report.reported_by,
            occurred_at=as_utc(report.occurred_at) if report.occurred_at else now
        )

        critical = severity == IncidentSeverity.CRITICAL
        if critical:
            incident.status = IncidentStatus.INVESTIGATING
            incident.assigned_to = self.emergency_role
            incident.assigned_at = now

        await self.repository.create(incident)

        payload = incident_payload(incident)
        self.bus.publish(EventType.INCIDENT_CREATED, payload)

        if critical:
            logger.critical(
                f"CRITICAL INCIDENT {incident.id} on vehicle {incident.vehicle_id}: "
                f"{incident.title} (assigned to {self.emergency_role})"
            )
            self.bus.publish(EventType.EMERGENCY_ALERT, payload)
        else:
            logger.info(f"Incident {incident.id} reported ({severity.value}) for vehicle {incident.vehicle_id}")

        return incident

    async def assign(self, incident_id: uuid.UUID, assignee: str) -> Incident:
        if not assignee or not assignee.strip():
            raise ValidationError("Assignee is required")

        incident = await self.repository.require(Incident, incident_id)
        if incident.is_resolved:
            raise StateError(
                "Cannot assign a resolved incident",
                {"incident_id": str(incident_id), "status": incident.status.value}
            )

        await self.repository.update(
            incident,
            status=IncidentStatus.INVESTIGATING,
            assigned_to=assignee.strip(),
            assigned_at=self.clock()
        )

        logger.info(f"Incident {incident_id} assigned to {incident.assigned_to}")
        self.bus.publish(EventType.INCIDENT_ASSIGNED, incident_payload(incident))
        return incident

    async def resolve(self, incident_id: uuid.UUID, resolution_notes: str) -> Incident:
        if not resolution_notes or not resolution_notes.strip():
            raise ValidationError("Resolution notes are required")

        incident = await self.repository.require(Incident, incident_id)
        if incident.is_resolved:
            raise StateError(
                "Incident is already resolved",
                {"incident_id": str(incident_id)}
            )

        await self.repository.update(
            incident,
            status=IncidentStatus.RESOLVED,
            resolution_notes=resolution_notes.strip(),
            resolved_at=self.clock()
        )

        logger.info(f"Incident {incident_id} resolved")
        payload = incident_payload(incident)
        payload["resolution_notes"] = incident.resolution_notes
        payload["resolved_at"] = as_utc(incident.resolved_at).isoformat()
        self.bus.publish(EventType.INCIDENT_RESOLVED, payload)
        return incident

    async def timeline(self, incident_id: uuid.UUID) -> List[Dict[str, Any]]:
        """Chronological lifecycle entries for an incident"""
        incident = await self.repository.require(Incident, incident_id)

        entries = [{
            "event": "reported",
            "timestamp": as_utc(incident.occurred_at),
            "description": f"{incident.severity.value.title()} {incident.incident_type.value} incident reported",
            "actor": str(incident.reported_by) if incident.reported_by else None
        }]

        if incident.assigned_at is not None:
            entries.append({
                "event": "assigned",
                "timestamp": as_utc(incident.assigned_at),
                "description": f"Assigned to {incident.assigned_to}",
                "actor": incident.assigned_to
            })

        if incident.resolved_at is not None:
            entries.append({
                "event": "resolved",
                "timestamp": as_utc(incident.resolved_at),
                "description": incident.resolution_notes,
                "actor": incident.assigned_to
            })

        entries.sort(key=lambda entry: entry["timestamp"])
        return entries

    async def list_open(self, vehicle_id: Optional[uuid.UUID] = None) -> List[Incident]:
        """Unresolved incidents, most severe first, then oldest first"""
        filters: Dict[str, Any] = {"status": [IncidentStatus.REPORTED, IncidentStatus.INVESTIGATING]}
        if vehicle_id is not None:
            filters["vehicle_id"] = vehicle_id

        incidents = await self.repository.find(Incident, **filters)
        incidents.sort(key=lambda i: (SEVERITY_RANK[i.severity], as_utc(i.occurred_at)))
        return incidents

    async def statistics(self, vehicle_id: Optional[uuid.UUID] = None) -> IncidentStatistics:
        filters = {"vehicle_id": vehicle_id} if vehicle_id is not None else {}
        incidents = await self.repository.find(Incident, **filters)

        today = service_date(self.clock())
        total = len(incidents)
        resolved = [i for i in incidents if i.is_resolved]

        return IncidentStatistics(
            total_incidents=total,
            open_incidents=total - len(resolved),
            critical_incidents=sum(1 for i in incidents if i.severity == IncidentSeverity.CRITICAL),
            resolved_today=sum(1 for i in resolved if service_date(i.resolved_at) == today),
            resolution_rate=round(len(resolved) / total * 100, 2) if total else 0.0
        )
