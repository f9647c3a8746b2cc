"""
Outbound event model.

Events are the only way govflow tells the outside world that something
happened: a work item moved, an SLA severity changed, a binder was built.
Delivery policy (who gets paged, via which channel) belongs to consumers.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from govflow.storage.models import format_ts, new_id, parse_ts, utcnow


class EventType(str, Enum):
    """Event topics."""

    # Work item lifecycle
    WORK_ITEM_CREATED = "WORK_ITEM_CREATED"
    WORK_ITEM_STARTED = "WORK_ITEM_STARTED"
    WORK_ITEM_SUBMITTED = "WORK_ITEM_SUBMITTED"
    WORK_ITEM_RETURNED = "WORK_ITEM_RETURNED"
    WORK_ITEM_APPROVED = "WORK_ITEM_APPROVED"
    WORK_ITEM_REJECTED = "WORK_ITEM_REJECTED"
    WORK_ITEM_COMPLETED = "WORK_ITEM_COMPLETED"

    # SLA clock
    SLA_DUE_SOON = "SLA_DUE_SOON"
    SLA_LATE = "SLA_LATE"
    SLA_ESCALATED = "SLA_ESCALATED"

    # Runs and periods
    RUN_CREATED = "RUN_CREATED"
    RUN_STARTED = "RUN_STARTED"
    RUN_CLOSED = "RUN_CLOSED"
    RUN_PUBLISHED = "RUN_PUBLISHED"
    PERIOD_LOCKED = "PERIOD_LOCKED"
    PERIOD_UNLOCKED = "PERIOD_UNLOCKED"

    # Evidence
    EVIDENCE_LINKED = "EVIDENCE_LINKED"
    MANIFEST_BUILT = "MANIFEST_BUILT"
    BINDER_BUILT = "BINDER_BUILT"
    ATTESTATION_SIGNED = "ATTESTATION_SIGNED"


@dataclass
class Event:
    """
    A single outbound event.

    Attributes:
        id: Unique event id.
        type: Event topic.
        tenant_id: Tenant the event belongs to.
        item_id: Subject entity (work item, run, binder, ...).
        value: New severity or state, when the event carries one.
        timestamp: When the change happened (UTC).
        payload: Additional context.
    """

    id: str
    type: EventType
    tenant_id: str
    item_id: str | None
    value: str | None
    timestamp: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        event_type: EventType,
        tenant_id: str,
        item_id: str | None = None,
        value: str | None = None,
        payload: dict[str, Any] | None = None,
        timestamp: datetime | None = None,
    ) -> Event:
        return cls(
            id=new_id(),
            type=event_type,
            tenant_id=tenant_id,
            item_id=item_id,
            value=value,
            timestamp=timestamp or utcnow(),
            payload=payload or {},
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Event:
        return cls(
            id=row["id"],
            type=EventType(row["type"]),
            tenant_id=row["tenant_id"],
            item_id=row["item_id"],
            value=row["value"],
            timestamp=parse_ts(row["created_at"]),
            payload=json.loads(row["payload_json"]) if row["payload_json"] else {},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "tenant_id": self.tenant_id,
            "item_id": self.item_id,
            "value": self.value,
            "timestamp": format_ts(self.timestamp),
            "payload": self.payload,
        }
