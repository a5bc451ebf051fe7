from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import JSON, UniqueConstraint
from datetime import datetime, timezone, date
from typing import Optional, Dict, Any
from enum import Enum
import secrets
import uuid

class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"

class RidershipEventType(str, Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"

class ValidationMethod(str, Enum):
    QR_CODE = "qr_code"
    RFID = "rfid"
    MANUAL = "manual"
    FACIAL_RECOGNITION = "facial_recognition"

class StudentTransportStatus(str, Enum):
    ARRIVED_AT_SCHOOL = "arrived_at_school"
    ON_BUS_TRAVELING = "on_bus_traveling"
    ON_BUS_WAITING = "on_bus_waiting"
    BUS_APPROACHING = "bus_approaching"
    WAITING_FOR_PICKUP = "waiting_for_pickup"

def generate_qr_code() -> str:
    """Printable credential encoded in the student's transport QR code"""
    return f"STU{secrets.token_hex(8).upper()}"

class StudentSubscriptionBase(SQLModel):
    student_id: uuid.UUID = Field(index=True)
    route_id: uuid.UUID = Field(foreign_key="route.id", index=True)
    pickup_stop_id: Optional[uuid.UUID] = Field(default=None, foreign_key="stop.id")
    dropoff_stop_id: Optional[uuid.UUID] = Field(default=None, foreign_key="stop.id")

class StudentSubscription(StudentSubscriptionBase, table=True):

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    qr_code: str = Field(default_factory=generate_qr_code, unique=True, index=True)

class StudentSubscriptionCreate(StudentSubscriptionBase):
    pass

class RidershipEvent(SQLModel, table=True):
    """
    One check-in or check-out. The unique key enforces at most one event
    of each type per student and service date at the storage layer.
    """
    __table_args__ = (
        UniqueConstraint("student_id", "service_date", "event_type", name="uq_ridership_student_day_type"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    student_id: uuid.UUID = Field(index=True)
    vehicle_id: uuid.UUID = Field(foreign_key="vehicle.id", index=True)
    stop_id: uuid.UUID = Field(foreign_key="stop.id")
    route_id: uuid.UUID = Field(foreign_key="route.id", index=True)
    event_type: RidershipEventType
    event_timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    service_date: date = Field(index=True)
    validation_method: ValidationMethod
    validation_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    is_automated: bool = False
    recorded_by: Optional[uuid.UUID] = None

class CheckRequest(SQLModel):
    """Inbound check-in / check-out request"""
    student_id: uuid.UUID
    vehicle_id: uuid.UUID
    stop_id: uuid.UUID
    timestamp: Optional[datetime] = None
    validation_method: ValidationMethod = ValidationMethod.MANUAL
    validation_data: Optional[Dict[str, Any]] = None
    recorded_by: Optional[uuid.UUID] = None

class RosterEntry(SQLModel):
    student_id: uuid.UUID
    pickup_stop_id: Optional[uuid.UUID] = None
    dropoff_stop_id: Optional[uuid.UUID] = None
    checked_in: bool = False
    checked_out: bool = False

class BusRoster(SQLModel):
    route_id: uuid.UUID
    vehicle_id: uuid.UUID
    service_date: date
    total_students: int
    checked_in: int
    checked_out: int
    no_shows: int
    students: list[RosterEntry]

class QrCodeScan(SQLModel):
    qr_code: str
