"""
Tests for event publication and retried, independent delivery.
"""

import pytest

from app.core.events import EventBus, EventType


class FlakyHandler:
    """Fails the first `failures` calls, then succeeds"""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0
        self.received = []

    async def __call__(self, event):
        self.calls += 1
        if self.calls <= self.failures:
            raise ConnectionError("collaborator unavailable")
        self.received.append(event)


def test_publish_without_running_loop_does_not_raise():
    bus = EventBus(max_retries=1, backoff_seconds=0)
    bus.subscribe(FlakyHandler(0))

    event = bus.publish(EventType.INCIDENT_CREATED, {"incident_id": "1"})

    assert event.type == EventType.INCIDENT_CREATED
    assert bus.events_of(EventType.INCIDENT_CREATED) == [event]


def test_event_serializes_with_id():
    bus = EventBus()
    event = bus.publish(EventType.LOCATION_UPDATED, {"vehicle_id": "v"})
    data = event.to_dict()
    assert data["type"] == "location-updated"
    assert data["id"] == event.id
    assert data["payload"] == {"vehicle_id": "v"}


@pytest.mark.asyncio
async def test_failed_delivery_is_retried():
    bus = EventBus(max_retries=3, backoff_seconds=0)
    handler = FlakyHandler(failures=2)
    bus.subscribe(handler)

    bus.publish(EventType.EMERGENCY_ALERT, {"incident_id": "1"})
    await bus.drain()

    assert handler.calls == 3
    assert len(handler.received) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_never_reach_publisher():
    bus = EventBus(max_retries=2, backoff_seconds=0)
    handler = FlakyHandler(failures=100)
    bus.subscribe(handler)

    bus.publish(EventType.EMERGENCY_ALERT, {"incident_id": "1"})
    await bus.drain()

    assert handler.calls == 3
    assert handler.received == []


@pytest.mark.asyncio
async def test_subscribers_are_independent():
    bus = EventBus(max_retries=1, backoff_seconds=0)
    broken = FlakyHandler(failures=100)
    healthy = FlakyHandler(failures=0)
    bus.subscribe(broken)
    bus.subscribe(healthy)

    bus.publish(EventType.INCIDENT_RESOLVED, {"incident_id": "1"})
    await bus.drain()

    assert len(healthy.received) == 1
    assert broken.calls == 2


@pytest.mark.asyncio
async def test_subscription_filter():
    bus = EventBus(max_retries=0, backoff_seconds=0)
    alerts = FlakyHandler(failures=0)
    bus.subscribe(alerts, [EventType.EMERGENCY_ALERT])

    bus.publish(EventType.LOCATION_UPDATED, {})
    bus.publish(EventType.EMERGENCY_ALERT, {})
    await bus.drain()

    assert [event.type for event in alerts.received] == [EventType.EMERGENCY_ALERT]
