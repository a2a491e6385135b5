"""
Domain event publishing. Delivery (SMS, push, sockets) happens elsewhere.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

logger = logging.getLogger(__name__)

SERVICE_STATUS_CHANGED = "ServiceStatusChanged"
SERVICE_REQUEST_DISPATCHED = "ServiceRequestDispatched"
PLUMBER_AVAILABILITY_CHANGED = "PlumberAvailabilityChanged"
LEAK_ALERT_RAISED = "LeakAlertRaised"


class NotificationSink(Protocol):
    async def publish(self, event_type: str, payload: dict[str, Any]) -> None: ...


class LoggingNotificationSink:
    """Default sink: writes every event to the application log."""

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        logger.info("event=%s payload=%s", event_type, payload)


@dataclass
class PublishedEvent:
    event_type: str
    payload: dict[str, Any]


class InMemoryNotificationSink:
    """Keeps published events in order; used by tests and local runs."""

    def __init__(self) -> None:
        self.events: list[PublishedEvent] = []

    async def publish(self, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append(PublishedEvent(event_type, payload))

    def of_type(self, event_type: str) -> list[PublishedEvent]:
        return [e for e in self.events if e.event_type == event_type]

    def clear(self) -> None:
        self.events.clear()


async def publish_safely(
    sink: NotificationSink, event_type: str, payload: dict[str, Any]
) -> None:
    """Publish after a change is persisted; a failing sink is logged, not raised."""
    try:
        await sink.publish(event_type, payload)
    except Exception:
        logger.exception("Failed to publish %s event", event_type)
