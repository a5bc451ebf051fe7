from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import Index
from datetime import datetime, timezone
from typing import Optional
from enum import Enum
import uuid

class TrackingStatus(str, Enum):
    OFFLINE = "offline"
    MOVING = "moving"
    STOPPED = "stopped"
    AT_STOP = "at_stop"

class LocationSampleBase(SQLModel):
    vehicle_id: uuid.UUID
    route_id: uuid.UUID
    latitude: float
    longitude: float
    speed_kmh: float = 0.0
    heading: Optional[float] = None
    current_stop_id: Optional[uuid.UUID] = None
    next_stop_id: Optional[uuid.UUID] = None

class LocationSample(LocationSampleBase, table=True):
    """Append-only position log; the newest row per vehicle is its current state"""
    __table_args__ = (Index("ix_location_sample_vehicle_recorded", "vehicle_id", "recorded_at"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    status: TrackingStatus = TrackingStatus.STOPPED
    eta_minutes: Optional[int] = None
    recorded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True), nullable=False)
    )

class LocationReport(LocationSampleBase):
    """Inbound position report from a vehicle device"""
    timestamp: Optional[datetime] = None

class VehicleState(SQLModel):
    """Current state of a vehicle as seen by readers (staleness applied)"""
    vehicle_id: uuid.UUID
    route_id: Optional[uuid.UUID] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    speed_kmh: Optional[float] = None
    heading: Optional[float] = None
    status: TrackingStatus = TrackingStatus.OFFLINE
    recorded_status: Optional[TrackingStatus] = None
    current_stop_id: Optional[uuid.UUID] = None
    next_stop_id: Optional[uuid.UUID] = None
    eta_minutes: Optional[int] = None
    last_updated: Optional[datetime] = None

    @property
    def is_moving(self) -> bool:
        # at_stop samples can still carry speed (rolling through a stop)
        return self.status != TrackingStatus.OFFLINE and (self.speed_kmh or 0) > 0

class RouteProgress(SQLModel):
    route_id: uuid.UUID
    vehicle_id: Optional[uuid.UUID] = None
    current_location: Optional[VehicleState] = None
    progress_percentage: float = 0.0
    stops_completed: int = 0
    stops_remaining: int = 0
    estimated_completion: Optional[datetime] = None
