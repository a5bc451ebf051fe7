from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import JSON, Index, text
from datetime import datetime, date
from typing import Optional, Dict, Any
from enum import Enum
import uuid

class ShiftStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

class DayPart(str, Enum):
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"

    @classmethod
    def for_hour(cls, hour: int) -> "DayPart":
        if 5 <= hour < 12:
            return cls.MORNING
        if 12 <= hour < 17:
            return cls.AFTERNOON
        return cls.EVENING

class ShiftLog(SQLModel, table=True):
    """
    Daily driver/vehicle/route log. The partial unique index allows only one
    in-progress log per (driver, vehicle, route, date); enum columns store
    member names, hence 'IN_PROGRESS' in the predicate.
    """
    __table_args__ = (
        Index(
            "uq_shift_in_progress",
            "driver_id", "vehicle_id", "route_id", "service_date",
            unique=True,
            sqlite_where=text("status = 'IN_PROGRESS'"),
            postgresql_where=text("status = 'IN_PROGRESS'"),
        ),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    driver_id: uuid.UUID = Field(index=True)
    vehicle_id: uuid.UUID = Field(foreign_key="vehicle.id")
    route_id: uuid.UUID = Field(foreign_key="route.id")
    service_date: date
    day_part: DayPart
    status: ShiftStatus = ShiftStatus.IN_PROGRESS
    departure_time: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    arrival_time: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    odometer_start: Optional[float] = None
    odometer_end: Optional[float] = None
    fuel_level_start: Optional[float] = None
    fuel_level_end: Optional[float] = None
    safety_checklist: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    students_picked_up: Optional[int] = None
    students_dropped_off: Optional[int] = None
    notes: Optional[str] = None

class ShiftTelemetry(SQLModel):
    """Inbound shift start / end payload"""
    driver_id: uuid.UUID
    vehicle_id: uuid.UUID
    route_id: uuid.UUID
    odometer: Optional[float] = None
    fuel_level: Optional[float] = None
    checklist: Optional[Dict[str, Any]] = None
    students_picked_up: Optional[int] = None
    students_dropped_off: Optional[int] = None
    notes: Optional[str] = None
