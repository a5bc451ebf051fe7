from sqlmodel import SQLModel, Field, Column, DateTime
from sqlalchemy import UniqueConstraint
from datetime import datetime, timezone
from typing import Optional
import uuid

class RouteBase(SQLModel):
    name: str
    code: Optional[str] = None
    description: Optional[str] = None

class Route(RouteBase, table=True):

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    total_distance_km: float = 0.0
    estimated_duration_minutes: int = 0
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_column=Column(DateTime(timezone=True))
    )

class RouteCreate(RouteBase):
    pass

class StopBase(SQLModel):
    name: str
    latitude: float
    longitude: float

class Stop(StopBase, table=True):
    __table_args__ = (UniqueConstraint("route_id", "stop_order", name="uq_stop_route_order"),)

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    route_id: uuid.UUID = Field(foreign_key="route.id", index=True)
    stop_order: int

class StopCreate(StopBase):
    pass

class StopRelocate(SQLModel):
    latitude: float
    longitude: float

class StopOrderEntry(SQLModel):
    id: uuid.UUID
    name: str
    new_order: int
    latitude: float
    longitude: float

class OptimizationResult(SQLModel):
    route_id: uuid.UUID
    original_distance: float
    optimized_distance: float
    distance_saved: float
    percentage_saved: float
    estimated_duration_minutes: int
    total_stops: int
    optimized_stops: list[StopOrderEntry]
