"""
Outbound transport events and their asynchronous delivery.

Publishing never waits for subscribers: each subscriber gets its own
background task with its own retries; a failing channel never blocks
or fails the operation that produced the event.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from app.config import settings

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    LOCATION_UPDATED = "location-updated"
    BUS_ARRIVED_AT_STOP = "bus-arrived-at-stop"
    STUDENT_CHECKED_IN = "student-checked-in"
    STUDENT_CHECKED_OUT = "student-checked-out"
    INCIDENT_CREATED = "incident-created"
    INCIDENT_ASSIGNED = "incident-assigned"
    INCIDENT_RESOLVED = "incident-resolved"
    EMERGENCY_ALERT = "emergency-alert"


@dataclass
class TransportEvent:
    type: EventType
    payload: Dict[str, Any]
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat()
        }


EventHandler = Callable[[TransportEvent], Awaitable[None]]


class EventBus:
    """In-process publisher handing events to notification subscribers"""

    def __init__(
        self,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        history_size: int = 1000
    ):
        self.max_retries = max_retries if max_retries is not None else settings.NOTIFY_MAX_RETRIES
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.NOTIFY_BACKOFF_SECONDS
        self._subscribers: List[Tuple[EventHandler, Optional[Set[EventType]]]] = []
        self._pending: Set[asyncio.Task] = set()
        self.published: Deque[TransportEvent] = deque(maxlen=history_size)

    def subscribe(self, handler: EventHandler, event_types: Optional[Iterable[EventType]] = None):
        """Register a handler for all events, or only for the given types"""
        types = set(event_types) if event_types is not None else None
        self._subscribers.append((handler, types))

    def publish(self, event_type: EventType, payload: Dict[str, Any]) -> TransportEvent:
        event = TransportEvent(type=event_type, payload=payload)
        self.published.append(event)
        logger.debug(f"Event {event_type.value}: {payload}")

        for handler, types in self._subscribers:
            if types is not None and event_type not in types:
                continue
            self._schedule(handler, event)

        return event

    def _schedule(self, handler: EventHandler, event: TransportEvent):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop, dropping delivery of {event.type.value}")
            return

        task = loop.create_task(self._deliver(handler, event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, handler: EventHandler, event: TransportEvent) -> bool:
        name = getattr(handler, "__qualname__", repr(handler))
        attempt = 0

        while True:
            attempt += 1
            try:
                await handler(event)
                return True
            except Exception as e:
                if attempt > self.max_retries:
                    logger.error(
                        f"Delivery of {event.type.value} to {name} failed after {attempt} attempts: {e}"
                    )
                    return False
                wait_time = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Delivery of {event.type.value} to {name} failed, retrying in {wait_time:.1f}s "
                    f"(attempt {attempt}/{self.max_retries}): {e}"
                )
                await asyncio.sleep(wait_time)

    async def drain(self):
        """Wait for in-flight deliveries (shutdown and tests)"""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def events_of(self, event_type: EventType) -> List[TransportEvent]:
        return [event for event in self.published if event.type == event_type]
