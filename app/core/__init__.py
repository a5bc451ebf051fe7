"""
Core modules for the school fleet transport service

This package contains the transport business logic:
- geofencing: distance, stop geofences and coordinate validation
- route_optimizer: stop ordering and route totals
- tracking: vehicle position ingestion, state and progress
- ridership: student check-in / check-out and roster
- incidents: incident lifecycle and emergency alerts
- shifts: driver route start / end
- fleet: vehicle to route assignments
- events: outbound events and their delivery
"""

from .errors import (
    TransportError,
    ValidationError,
    ConflictError,
    NotFoundError,
    CapacityError,
    StateError,
    DeliveryError
)

from .geofencing import (
    GeoPoint,
    calculate_distance,
    distance,
    is_within_geofence,
    circle_boundary,
    stop_geofence,
    validate_coordinates
)

from .events import (
    EventBus,
    EventType,
    TransportEvent
)

__all__ = [
    # Errors
    "TransportError",
    "ValidationError",
    "ConflictError",
    "NotFoundError",
    "CapacityError",
    "StateError",
    "DeliveryError",

    # Geofencing
    "GeoPoint",
    "calculate_distance",
    "distance",
    "is_within_geofence",
    "circle_boundary",
    "stop_geofence",
    "validate_coordinates",

    # Events
    "EventBus",
    "EventType",
    "TransportEvent"
]
