"""
Outbound events for govflow.

Usage:
    from govflow.events import EventOutbox, LoggingEventSink

    outbox = EventOutbox(db)
    outbox.dispatch(LoggingEventSink())
"""

from govflow.events.models import Event, EventType
from govflow.events.outbox import EventOutbox
from govflow.events.sinks import (
    EventDeliveryError,
    EventSink,
    LoggingEventSink,
    MemoryEventSink,
    WebhookEventSink,
    create_sink,
)

__all__ = [
    "Event",
    "EventType",
    "EventOutbox",
    "EventSink",
    "LoggingEventSink",
    "MemoryEventSink",
    "WebhookEventSink",
    "EventDeliveryError",
    "create_sink",
]
