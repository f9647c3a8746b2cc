"""
Transactional event outbox.

State changes append their events to the event_outbox table on the same
connection, inside the same transaction, as the change itself. A rolled
back transition therefore never leaves an event behind, and a committed
one never loses its event. Delivery happens later via dispatch().
"""

from __future__ import annotations

import json
import logging
import sqlite3

from govflow.events.models import Event
from govflow.events.sinks import EventDeliveryError, EventSink
from govflow.storage.database import Database
from govflow.storage.models import format_ts, utcnow

logger = logging.getLogger(__name__)


class EventOutbox:
    """
    Outbox over the shared database.

    Example:
        with db.transaction() as conn:
            conn.execute("UPDATE wf_work_item ...")
            EventOutbox.append(conn, Event.create(EventType.SLA_LATE, "acme", item_id))

        outbox = EventOutbox(db)
        delivered = outbox.dispatch(LoggingEventSink())
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    @staticmethod
    def append(conn: sqlite3.Connection, event: Event) -> None:
        """Insert an event using the caller's connection and transaction."""
        conn.execute(
            """
            INSERT INTO event_outbox (
                id, type, tenant_id, item_id, value, payload_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.type.value,
                event.tenant_id,
                event.item_id,
                event.value,
                json.dumps(event.payload, sort_keys=True, default=str),
                format_ts(event.timestamp),
            ),
        )

    def pending(self, limit: int = 100, tenant_id: str | None = None) -> list[Event]:
        """Get undelivered events in the order they were written."""
        query = "SELECT * FROM event_outbox WHERE dispatched_at IS NULL"
        params: list[object] = []
        if tenant_id is not None:
            query += " AND tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY seq LIMIT ?"
        params.append(limit)

        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Event.from_row(row) for row in rows]

    def pending_count(self) -> int:
        with self.db.connection() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM event_outbox WHERE dispatched_at IS NULL"
            ).fetchone()[0]

    def mark_dispatched(self, event_id: str) -> None:
        with self.db.connection() as conn:
            conn.execute(
                "UPDATE event_outbox SET dispatched_at = ? WHERE id = ? AND dispatched_at IS NULL",
                (format_ts(utcnow()), event_id),
            )

    def dispatch(self, sink: EventSink, limit: int = 100) -> int:
        """
        Deliver pending events to a sink, oldest first.

        A delivery failure stops the batch; the failed event and everything
        after it stay pending for the next dispatch.

        Returns:
            Number of events delivered.
        """
        delivered = 0
        for event in self.pending(limit=limit):
            try:
                sink.deliver(event)
            except EventDeliveryError as e:
                logger.warning(
                    f"Event delivery failed for {event.type.value} ({event.id}): {e}; "
                    f"{self.pending_count()} event(s) left pending"
                )
                break
            self.mark_dispatched(event.id)
            delivered += 1

        if delivered:
            logger.debug(f"Dispatched {delivered} event(s) to {type(sink).__name__}")
        return delivered
