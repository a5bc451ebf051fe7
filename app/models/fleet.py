from sqlmodel import SQLModel, Field, Column, DateTime
from datetime import datetime, timezone, date
from typing import Optional
from enum import Enum
import uuid

class VehicleStatus(str, Enum):
    ACTIVE = "active"
    MAINTENANCE = "maintenance"
    OUT_OF_SERVICE = "out_of_service"
    RETIRED = "retired"

class AssignmentStatus(str, Enum):
    ACTIVE = "active"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    INACTIVE = "inactive"

LIVE_ASSIGNMENT_STATUSES = (AssignmentStatus.ACTIVE, AssignmentStatus.IN_PROGRESS)

class VehicleBase(SQLModel):
    name: str
    license_plate: str
    capacity: int = Field(ge=0)
    current_occupancy: int = 0
    status: VehicleStatus = VehicleStatus.ACTIVE

class Vehicle(VehicleBase, table=True):

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )

    @property
    def available_seats(self) -> int:
        return max(self.capacity - self.current_occupancy, 0)

class VehicleCreate(VehicleBase):
    pass

class RouteAssignmentBase(SQLModel):
    vehicle_id: uuid.UUID = Field(foreign_key="vehicle.id", index=True)
    route_id: uuid.UUID = Field(foreign_key="route.id", index=True)
    driver_id: uuid.UUID = Field(index=True)
    valid_from: date
    valid_until: Optional[date] = None

class RouteAssignment(RouteAssignmentBase, table=True):

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    status: AssignmentStatus = AssignmentStatus.ACTIVE
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )

    def covers(self, day: date) -> bool:
        if day < self.valid_from:
            return False
        return self.valid_until is None or day <= self.valid_until

    def overlaps(self, start: date, end: Optional[date]) -> bool:
        """Whether this assignment's window intersects [start, end] (open-ended when end is None)"""
        if end is not None and end < self.valid_from:
            return False
        return self.valid_until is None or start <= self.valid_until

class RouteAssignmentCreate(RouteAssignmentBase):
    pass
