"""
Typed failures raised by the transport core.

Every failure reaches the caller as its own type; the HTTP layer maps
each one to a status code in app.main.
"""

from typing import Any, Dict, Optional


class TransportError(Exception):
    """Base class for all transport core failures"""

    code = "transport_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(TransportError):
    """Malformed or out-of-range input"""

    code = "validation_error"


class ConflictError(TransportError):
    """Duplicate check-in/out, duplicate active shift, overlapping assignment"""

    code = "conflict"


class NotFoundError(TransportError):
    """Unknown vehicle, route, stop, subscription, incident or shift"""

    code = "not_found"


class CapacityError(TransportError):
    """Operation would exceed vehicle capacity"""

    code = "capacity_exceeded"


class StateError(TransportError):
    """Operation not allowed in the current state"""

    code = "invalid_state"


class DeliveryError(Exception):
    """A notification channel failed to deliver an event (retried by the event bus)"""
