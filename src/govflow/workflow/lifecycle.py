"""
Work-item lifecycle state machine.

Transitions:
    start     OPEN | RETURNED       -> IN_PROGRESS   (owner)
    submit    OPEN | IN_PROGRESS    -> SUBMITTED     (owner)
    return    SUBMITTED             -> RETURNED      (designated approver)
    approve   SUBMITTED             -> APPROVED      (role >= required role)
    reject    SUBMITTED             -> REJECTED      (role >= required role)
    complete  OPEN | IN_PROGRESS    -> DONE          (owner, no approver)

APPROVED, REJECTED and DONE are absorbing.

Every transition runs in one write transaction: read the item, check the
guards, update conditionally on the state that was read, append the event
to the outbox, commit. A guard failure raises before anything is written.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import Any

from govflow.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from govflow.events.models import Event, EventType
from govflow.events.outbox import EventOutbox
from govflow.evidence.registry import EvidenceRegistry, count_links
from govflow.storage.database import Database
from govflow.storage.models import (
    Role,
    SlaSeverity,
    WorkItem,
    WorkItemKind,
    WorkItemState,
    check_tenant,
    format_ts,
    new_id,
    require_text,
    utcnow,
)

logger = logging.getLogger(__name__)

Guard = Callable[[sqlite3.Connection, WorkItem], None]


class LifecycleManager:
    """
    Creates work items and drives them through their states.

    Example:
        lifecycle = LifecycleManager(db, registry)
        item = lifecycle.create_item(
            "acme", WorkItemKind.CLOSE_TASK, "BANK_REC", "Bank reconciliation",
            owner="alice", actor_id="ops", approver="carol",
        )
        lifecycle.submit("acme", item.id, "alice", evidence_record_ids=[record.id])
        lifecycle.approve("acme", item.id, "carol", Role.CONTROLLER)
    """

    def __init__(self, db: Database, registry: EvidenceRegistry) -> None:
        self.db = db
        self.registry = registry

    # -------------------------------------------------------------------------
    # Creation and lookup
    # -------------------------------------------------------------------------

    def create_item(
        self,
        tenant_id: str,
        kind: WorkItemKind | str,
        code: str,
        title: str,
        owner: str,
        actor_id: str,
        run_id: str | None = None,
        approver: str | None = None,
        required_role: Role | str = Role.MANAGER,
        due_at: datetime | None = None,
        evidence_required: bool = False,
        payload: dict[str, Any] | None = None,
        parent_id: str | None = None,
    ) -> WorkItem:
        """Create a work item in state OPEN."""
        with self.db.transaction() as conn:
            item = self.create_item_in(
                conn,
                tenant_id,
                kind,
                code,
                title,
                owner,
                actor_id,
                run_id=run_id,
                approver=approver,
                required_role=required_role,
                due_at=due_at,
                evidence_required=evidence_required,
                payload=payload,
                parent_id=parent_id,
            )
        logger.info(f"Created {item.kind.value} {item.code} ({item.id}) owned by {item.owner}")
        return item

    def create_item_in(
        self,
        conn: sqlite3.Connection,
        tenant_id: str,
        kind: WorkItemKind | str,
        code: str,
        title: str,
        owner: str,
        actor_id: str,
        run_id: str | None = None,
        approver: str | None = None,
        required_role: Role | str = Role.MANAGER,
        due_at: datetime | None = None,
        evidence_required: bool = False,
        payload: dict[str, Any] | None = None,
        parent_id: str | None = None,
    ) -> WorkItem:
        """Create a work item using the caller's connection and transaction."""
        check_tenant(tenant_id)
        actor_id = require_text(actor_id, "actor_id", tenant_id)
        try:
            kind = WorkItemKind(str(getattr(kind, "value", kind)).upper())
        except ValueError:
            raise ValidationError(f"Invalid work item kind: {kind}", tenant_id=tenant_id) from None

        if parent_id is not None:
            self._load(conn, tenant_id, parent_id)

        now = utcnow()
        item = WorkItem(
            id=new_id(),
            tenant_id=tenant_id,
            run_id=run_id,
            kind=kind,
            code=require_text(code, "code", tenant_id),
            title=require_text(title, "title", tenant_id),
            owner=require_text(owner, "owner", tenant_id),
            approver=approver or None,
            required_role=Role.parse(required_role),
            due_at=due_at,
            state=WorkItemState.OPEN,
            sla_severity=SlaSeverity.OK,
            evidence_required=evidence_required,
            payload=dict(payload or {}),
            parent_id=parent_id,
            created_at=now,
            updated_at=now,
        )

        conn.execute(
            """
            INSERT INTO wf_work_item (
                id, tenant_id, run_id, kind, code, title, owner, approver,
                required_role, due_at, state, sla_severity, aging_days,
                evidence_required, payload_json, parent_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.id,
                item.tenant_id,
                item.run_id,
                item.kind.value,
                item.code,
                item.title,
                item.owner,
                item.approver,
                item.required_role.value,
                format_ts(item.due_at),
                item.state.value,
                item.sla_severity.value,
                item.aging_days,
                1 if item.evidence_required else 0,
                json.dumps(item.payload, sort_keys=True, default=str),
                item.parent_id,
                format_ts(item.created_at),
                format_ts(item.updated_at),
            ),
        )
        EventOutbox.append(
            conn,
            Event.create(
                EventType.WORK_ITEM_CREATED,
                tenant_id,
                item_id=item.id,
                value=item.state.value,
                payload={"kind": item.kind.value, "code": item.code, "created_by": actor_id},
            ),
        )
        return item

    @staticmethod
    def _load(conn: sqlite3.Connection, tenant_id: str, item_id: str) -> WorkItem:
        row = conn.execute(
            "SELECT * FROM wf_work_item WHERE tenant_id = ? AND id = ?",
            (tenant_id, item_id),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Work item not found: {item_id}", tenant_id=tenant_id)
        return WorkItem.from_row(row)

    def get_item(self, tenant_id: str, item_id: str) -> WorkItem:
        """
        Raises:
            NotFoundError: If the item does not exist for the tenant.
        """
        with self.db.connection() as conn:
            return self._load(conn, tenant_id, item_id)

    def get_parent(self, item: WorkItem) -> WorkItem | None:
        """Resolve an item's parent by id."""
        if item.parent_id is None:
            return None
        return self.get_item(item.tenant_id, item.parent_id)

    def list_items(
        self,
        tenant_id: str,
        run_id: str | None = None,
        states: Iterable[WorkItemState] | None = None,
        kind: WorkItemKind | None = None,
    ) -> list[WorkItem]:
        query = "SELECT * FROM wf_work_item WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(run_id)
        if states is not None:
            values = [s.value for s in states]
            query += f" AND state IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        if kind is not None:
            query += " AND kind = ?"
            params.append(kind.value)
        query += " ORDER BY created_at, id"

        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [WorkItem.from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _transition(
        self,
        tenant_id: str,
        item_id: str,
        action: str,
        allowed: tuple[WorkItemState, ...],
        target: WorkItemState,
        event_type: EventType,
        actor_id: str,
        guard: Guard | None = None,
        changes: Callable[[WorkItem], dict[str, Any]] | None = None,
    ) -> WorkItem:
        check_tenant(tenant_id)
        actor_id = require_text(actor_id, "actor_id", tenant_id)

        with self.db.transaction() as conn:
            item = self._load(conn, tenant_id, item_id)
            if item.state not in allowed:
                raise ValidationError(
                    f"Cannot {action} work item {item_id} in state {item.state.value}",
                    tenant_id=tenant_id,
                )
            if guard is not None:
                guard(conn, item)

            now = utcnow()
            fields: dict[str, Any] = {"state": target.value, "updated_at": format_ts(now)}
            if changes is not None:
                fields.update(changes(item))

            assignments = ", ".join(f"{name} = ?" for name in fields)
            cursor = conn.execute(
                f"UPDATE wf_work_item SET {assignments} "
                "WHERE tenant_id = ? AND id = ? AND state = ?",
                (*fields.values(), tenant_id, item_id, item.state.value),
            )
            if cursor.rowcount != 1:
                raise ConflictError(
                    f"Work item {item_id} changed state concurrently", tenant_id=tenant_id
                )

            EventOutbox.append(
                conn,
                Event.create(
                    event_type,
                    tenant_id,
                    item_id=item_id,
                    value=target.value,
                    payload={"actor_id": actor_id, "from": item.state.value},
                    timestamp=now,
                ),
            )
            updated = self._load(conn, tenant_id, item_id)

        logger.info(
            f"Work item {item_id} {item.state.value} -> {target.value} by {actor_id}"
        )
        return updated

    @staticmethod
    def _require_owner(actor_id: str) -> Guard:
        def guard(conn: sqlite3.Connection, item: WorkItem) -> None:
            if actor_id != item.owner:
                raise ForbiddenError(
                    f"Only the owner ({item.owner}) may change work item {item.id}",
                    tenant_id=item.tenant_id,
                )

        return guard

    @staticmethod
    def _require_authority(actor_role: Role) -> Guard:
        def guard(conn: sqlite3.Connection, item: WorkItem) -> None:
            if actor_role.rank < item.required_role.rank:
                raise ForbiddenError(
                    f"Role {actor_role.value} is below the required role "
                    f"{item.required_role.value} for work item {item.id}",
                    tenant_id=item.tenant_id,
                )

        return guard

    def _check_evidence(self, conn: sqlite3.Connection, item: WorkItem) -> None:
        if item.evidence_required:
            kind, ref_id = item.evidence_ref
            if count_links(conn, item.tenant_id, kind, ref_id) == 0:
                raise ValidationError(
                    f"Work item {item.id} requires evidence before it can be submitted",
                    tenant_id=item.tenant_id,
                )

    def start(self, tenant_id: str, item_id: str, actor_id: str) -> WorkItem:
        """OPEN or RETURNED -> IN_PROGRESS; owner only."""
        return self._transition(
            tenant_id,
            item_id,
            "start",
            (WorkItemState.OPEN, WorkItemState.RETURNED),
            WorkItemState.IN_PROGRESS,
            EventType.WORK_ITEM_STARTED,
            actor_id,
            guard=self._require_owner(actor_id),
        )

    def submit(
        self,
        tenant_id: str,
        item_id: str,
        actor_id: str,
        payload: dict[str, Any] | None = None,
        evidence_record_ids: Iterable[str] = (),
    ) -> WorkItem:
        """
        OPEN or IN_PROGRESS -> SUBMITTED; owner only.

        Supplied evidence records are linked in the same transaction, so a
        failed submit leaves no links behind.

        Raises:
            ValidationError: If the state does not allow submission, or
                evidence is required and none is linked.
            ForbiddenError: If the actor is not the owner.
            NotFoundError: If an evidence record does not exist.
        """
        owner_guard = self._require_owner(actor_id)
        record_ids = list(evidence_record_ids)

        def guard(conn: sqlite3.Connection, item: WorkItem) -> None:
            owner_guard(conn, item)
            kind, ref_id = item.evidence_ref
            for record_id in record_ids:
                self.registry.link_in(conn, tenant_id, record_id, kind, ref_id, actor_id)
            self._check_evidence(conn, item)

        def changes(item: WorkItem) -> dict[str, Any]:
            now = format_ts(utcnow())
            fields: dict[str, Any] = {
                "submitted_at": now,
                "sla_severity": SlaSeverity.OK.value,
                "sla_changed_at": now,
            }
            if payload:
                merged = dict(item.payload)
                merged["answers"] = payload
                fields["payload_json"] = json.dumps(merged, sort_keys=True, default=str)
            return fields

        return self._transition(
            tenant_id,
            item_id,
            "submit",
            (WorkItemState.OPEN, WorkItemState.IN_PROGRESS),
            WorkItemState.SUBMITTED,
            EventType.WORK_ITEM_SUBMITTED,
            actor_id,
            guard=guard,
            changes=changes,
        )

    def return_item(self, tenant_id: str, item_id: str, actor_id: str, reason: str) -> WorkItem:
        """
        SUBMITTED -> RETURNED; designated approver only.

        Raises:
            ValidationError: If the item is not SUBMITTED or reason is empty.
            ForbiddenError: If the actor is not the designated approver.
        """
        reason = require_text(reason, "reason", tenant_id)

        def guard(conn: sqlite3.Connection, item: WorkItem) -> None:
            if item.approver is None or actor_id != item.approver:
                raise ForbiddenError(
                    f"Only the designated approver may return work item {item.id}",
                    tenant_id=item.tenant_id,
                )

        return self._transition(
            tenant_id,
            item_id,
            "return",
            (WorkItemState.SUBMITTED,),
            WorkItemState.RETURNED,
            EventType.WORK_ITEM_RETURNED,
            actor_id,
            guard=guard,
            changes=lambda item: {"approver": actor_id, "return_reason": reason},
        )

    def approve(
        self, tenant_id: str, item_id: str, actor_id: str, actor_role: Role | str
    ) -> WorkItem:
        """
        SUBMITTED -> APPROVED; actor role must reach the required role.

        Raises:
            ValidationError: If the item is not SUBMITTED.
            ForbiddenError: If the actor's role is below the required role.
        """
        role = Role.parse(actor_role)

        def changes(item: WorkItem) -> dict[str, Any]:
            now = format_ts(utcnow())
            return {
                "approver": actor_id,
                "approved_at": now,
                "sla_severity": SlaSeverity.OK.value,
                "sla_changed_at": now,
            }

        return self._transition(
            tenant_id,
            item_id,
            "approve",
            (WorkItemState.SUBMITTED,),
            WorkItemState.APPROVED,
            EventType.WORK_ITEM_APPROVED,
            actor_id,
            guard=self._require_authority(role),
            changes=changes,
        )

    def reject(
        self,
        tenant_id: str,
        item_id: str,
        actor_id: str,
        actor_role: Role | str,
        reason: str,
    ) -> WorkItem:
        """SUBMITTED -> REJECTED (terminal); same authority rule as approve."""
        role = Role.parse(actor_role)
        reason = require_text(reason, "reason", tenant_id)
        return self._transition(
            tenant_id,
            item_id,
            "reject",
            (WorkItemState.SUBMITTED,),
            WorkItemState.REJECTED,
            EventType.WORK_ITEM_REJECTED,
            actor_id,
            guard=self._require_authority(role),
            changes=lambda item: {"approver": actor_id, "return_reason": reason},
        )

    def complete(self, tenant_id: str, item_id: str, actor_id: str) -> WorkItem:
        """
        OPEN or IN_PROGRESS -> DONE for items without an approver; owner only.

        Raises:
            ValidationError: If the item has an approver, or evidence is
                required and none is linked.
        """
        owner_guard = self._require_owner(actor_id)

        def guard(conn: sqlite3.Connection, item: WorkItem) -> None:
            owner_guard(conn, item)
            if item.approver is not None:
                raise ValidationError(
                    f"Work item {item.id} needs approval; submit it instead",
                    tenant_id=item.tenant_id,
                )
            self._check_evidence(conn, item)

        return self._transition(
            tenant_id,
            item_id,
            "complete",
            (WorkItemState.OPEN, WorkItemState.IN_PROGRESS),
            WorkItemState.DONE,
            EventType.WORK_ITEM_COMPLETED,
            actor_id,
            guard=guard,
            changes=lambda item: {
                "sla_severity": SlaSeverity.OK.value,
                "sla_changed_at": format_ts(utcnow()),
            },
        )
