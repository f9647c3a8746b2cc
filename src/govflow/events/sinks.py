"""
Outbound event sinks.

A sink receives one event at a time from the outbox. Sinks raise
EventDeliveryError when an event could not be delivered so the outbox can
keep it pending.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod

import requests

from govflow.config.settings import EventsConfig
from govflow.errors import GovflowError
from govflow.events.models import Event

logger = logging.getLogger(__name__)


class EventDeliveryError(GovflowError):
    """Raised when a sink cannot deliver an event."""

    kind = "IO"


class EventSink(ABC):
    """Base class for event delivery adapters."""

    @abstractmethod
    def deliver(self, event: Event) -> None:
        """
        Deliver a single event.

        Raises:
            EventDeliveryError: If the event was not delivered.
        """

    def close(self) -> None:
        """Release any resources held by the sink."""


class LoggingEventSink(EventSink):
    """Writes each event to the log at INFO level."""

    def deliver(self, event: Event) -> None:
        logger.info(
            f"event {event.type.value} tenant={event.tenant_id} "
            f"item={event.item_id} value={event.value}"
        )


class MemoryEventSink(EventSink):
    """Collects events in a list; useful for tests and embedding."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def deliver(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> list[Event]:
        return [e for e in self.events if e.type.value == event_type]


class WebhookEventSink(EventSink):
    """
    POSTs each event as JSON to a webhook URL.

    Any non-2xx response or request exception is a delivery failure.
    """

    def __init__(self, url: str, timeout: float = 10.0) -> None:
        self.url = url
        self.timeout = timeout
        self._session: requests.Session | None = None

    def _get_session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update(
                {
                    "Accept": "application/json",
                    "Content-Type": "application/json",
                    "User-Agent": "govflow-events",
                }
            )
        return self._session

    def deliver(self, event: Event) -> None:
        session = self._get_session()
        body = json.dumps(event.to_dict(), sort_keys=True)

        try:
            response = session.post(self.url, data=body, timeout=self.timeout)
        except requests.exceptions.ConnectionError as e:
            raise EventDeliveryError(
                f"Failed to connect to webhook: {e}", tenant_id=event.tenant_id
            ) from e
        except requests.exceptions.Timeout as e:
            raise EventDeliveryError(
                f"Webhook request timed out: {e}", tenant_id=event.tenant_id
            ) from e
        except requests.exceptions.RequestException as e:
            raise EventDeliveryError(
                f"Webhook request failed: {e}", tenant_id=event.tenant_id
            ) from e

        if not 200 <= response.status_code < 300:
            raise EventDeliveryError(
                f"Webhook returned HTTP {response.status_code}", tenant_id=event.tenant_id
            )

    def close(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None


def create_sink(config: EventsConfig) -> EventSink | None:
    """
    Build the sink named in the events configuration.

    Returns None for the "none" sink; events then stay in the outbox.
    """
    if config.sink == "log":
        return LoggingEventSink()
    if config.sink == "webhook":
        return WebhookEventSink(config.webhook_url, timeout=config.webhook_timeout_seconds)
    return None
