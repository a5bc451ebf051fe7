from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import JSON
from datetime import datetime, timezone
from typing import Optional, List
from enum import Enum
import uuid

class IncidentType(str, Enum):
    BREAKDOWN = "breakdown"
    ACCIDENT = "accident"
    DELAY = "delay"
    BEHAVIORAL = "behavioral"
    MEDICAL = "medical"
    EMERGENCY = "emergency"
    OTHER = "other"

class IncidentSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

class IncidentStatus(str, Enum):
    REPORTED = "reported"
    INVESTIGATING = "investigating"
    RESOLVED = "resolved"

class IncidentBase(SQLModel):
    vehicle_id: uuid.UUID
    route_id: Optional[uuid.UUID] = None
    incident_type: IncidentType = IncidentType.OTHER
    severity: IncidentSeverity
    title: Optional[str] = None
    description: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None

class Incident(IncidentBase, table=True):

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    status: IncidentStatus = IncidentStatus.REPORTED
    affected_student_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    reported_by: Optional[uuid.UUID] = None
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    resolution_notes: Optional[str] = None
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )
    resolved_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))

    @property
    def is_resolved(self) -> bool:
        return self.status == IncidentStatus.RESOLVED

class IncidentReport(SQLModel):
    """Inbound incident report; severity is checked by the coordinator"""
    vehicle_id: uuid.UUID
    route_id: Optional[uuid.UUID] = None
    incident_type: IncidentType = IncidentType.OTHER
    severity: str
    title: Optional[str] = None
    description: str = ""
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    affected_student_ids: List[uuid.UUID] = []
    reported_by: Optional[uuid.UUID] = None
    occurred_at: Optional[datetime] = None

class IncidentAssign(SQLModel):
    assignee: str

class IncidentResolve(SQLModel):
    resolution_notes: str

class IncidentStatistics(SQLModel):
    total_incidents: int
    open_incidents: int
    critical_incidents: int
    resolved_today: int
    resolution_rate: float
