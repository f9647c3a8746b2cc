"""
Run orchestrator.

A run is one compliance period's batch of work (e.g. the 2025-01 month-end
close). The orchestrator creates runs, materializes their work items from
templates when a run starts, tracks the run's aggregate status and manages
administrative period locks.

Run status:
    DRAFT -> IN_PROGRESS -> CLOSED -> PUBLISHED
"""

from __future__ import annotations

import logging
import re
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from zoneinfo import ZoneInfo

from govflow.errors import ConflictError, LockedError, NotFoundError, ValidationError
from govflow.events.models import Event, EventType
from govflow.events.outbox import EventOutbox
from govflow.storage.database import Database
from govflow.storage.models import (
    PeriodLock,
    Role,
    Run,
    RunStatus,
    SlaPolicy,
    SlaSeverity,
    WorkItemKind,
    WorkItemState,
    check_tenant,
    format_ts,
    new_id,
    require_text,
    utcnow,
)
from govflow.workflow.lifecycle import LifecycleManager
from govflow.workflow.sla import SlaClock

logger = logging.getLogger(__name__)

_MONTH_PERIOD = re.compile(r"^(\d{4})-(\d{2})$")
_PERIOD = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,31}$")

# Local time at which a monthly run's items fall due on the cutoff day
DUE_HOUR = 17


@dataclass(frozen=True)
class WorkItemTemplate:
    """
    Blueprint for a work item materialized when a run starts.

    Attributes:
        code: Item code, unique within a run.
        title: Human-readable title.
        kind: Work item kind.
        evidence_required: Whether submit needs linked evidence.
        priority: Ordering hint carried in the item payload.
        depends_on: Codes of items this one follows, carried in the payload.
        required_role: Minimum role that may approve.
        owner: Default owner; the run owner when None.
        approver: Default designated approver.
    """

    code: str
    title: str
    kind: WorkItemKind = WorkItemKind.CLOSE_TASK
    evidence_required: bool = False
    priority: int = 5
    depends_on: tuple[str, ...] = ()
    required_role: Role = Role.MANAGER
    owner: str | None = None
    approver: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkItemTemplate:
        return cls(
            code=data["code"],
            title=data["title"],
            kind=WorkItemKind(str(data.get("kind", WorkItemKind.CLOSE_TASK.value)).upper()),
            evidence_required=bool(data.get("evidence_required", False)),
            priority=int(data.get("priority", 5)),
            depends_on=tuple(data.get("depends_on", ())),
            required_role=Role.parse(data.get("required_role", Role.MANAGER)),
            owner=data.get("owner"),
            approver=data.get("approver"),
        )


DEFAULT_CLOSE_TEMPLATES: tuple[WorkItemTemplate, ...] = (
    WorkItemTemplate("GL_RECONCILE", "General Ledger Reconciliation", evidence_required=True, priority=10),
    WorkItemTemplate("AR_AGING", "Accounts Receivable Aging Review", evidence_required=True, priority=8),
    WorkItemTemplate("AP_AGING", "Accounts Payable Aging Review", evidence_required=True, priority=8),
    WorkItemTemplate("INVENTORY_COUNT", "Inventory Count Verification", evidence_required=True, priority=9),
    WorkItemTemplate("BANK_RECONCILE", "Bank Reconciliation", evidence_required=True, priority=10),
    WorkItemTemplate(
        "REV_RECOGNIZE",
        "Revenue Recognition",
        evidence_required=True,
        priority=7,
        depends_on=("AR_AGING",),
    ),
    WorkItemTemplate("DEPR_CALC", "Depreciation Calculation", priority=6),
    WorkItemTemplate(
        "TAX_PROVISION",
        "Tax Provision Calculation",
        evidence_required=True,
        priority=7,
        depends_on=("TRIAL_BALANCE",),
    ),
    WorkItemTemplate("FX_REVALUE", "Foreign Exchange Revaluation", priority=6),
    WorkItemTemplate(
        "TRIAL_BALANCE",
        "Trial Balance Review",
        evidence_required=True,
        priority=5,
        depends_on=("GL_RECONCILE", "AR_AGING", "AP_AGING", "INVENTORY_COUNT", "BANK_RECONCILE"),
    ),
)


def month_period(year: int, month: int) -> str:
    """
    Period key for a calendar month.

    Raises:
        ValidationError: If year is outside 2000-2100 or month outside 1-12.
    """
    if not 2000 <= year <= 2100:
        raise ValidationError(f"Year must be between 2000 and 2100, got {year}")
    if not 1 <= month <= 12:
        raise ValidationError(f"Month must be between 1 and 12, got {month}")
    return f"{year:04d}-{month:02d}"


def default_due_at(period: str, policy: SlaPolicy | None) -> datetime | None:
    """
    Default due date for items of a monthly run.

    The cutoff day of the month after the period, at DUE_HOUR in the
    policy's time zone. None for non-monthly periods or without a policy.
    """
    match = _MONTH_PERIOD.match(period)
    if match is None or policy is None:
        return None
    year, month = int(match.group(1)), int(match.group(2))
    year, month = (year + 1, 1) if month == 12 else (year, month + 1)
    local = datetime(year, month, policy.cutoff_day, DUE_HOUR, tzinfo=ZoneInfo(policy.tz))
    return local.astimezone(UTC)


@dataclass
class RunProgress:
    """Aggregate progress of a run's work items."""

    run_id: str
    status: RunStatus
    total: int
    completed: int
    by_state: dict[str, int] = field(default_factory=dict)
    overdue: int = 0

    @property
    def percent_complete(self) -> float:
        return round(100.0 * self.completed / self.total, 1) if self.total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "total": self.total,
            "completed": self.completed,
            "percent_complete": self.percent_complete,
            "by_state": dict(self.by_state),
            "overdue": self.overdue,
        }


class RunOrchestrator:
    """
    Creates and advances runs.

    Example:
        orchestrator = RunOrchestrator(db, lifecycle, clock)
        run = orchestrator.create_run("acme", month_period(2025, 1), "alice", "ops")
        run = orchestrator.start_run("acme", run.id, "ops", assignments={"BANK_RECONCILE": "bob"})
        progress = orchestrator.run_progress("acme", run.id)
    """

    def __init__(self, db: Database, lifecycle: LifecycleManager, clock: SlaClock) -> None:
        self.db = db
        self.lifecycle = lifecycle
        self.clock = clock

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def create_run(
        self,
        tenant_id: str,
        period: str,
        owner: str,
        actor_id: str,
        notes: str | None = None,
    ) -> Run:
        """
        Create a DRAFT run for a period.

        Raises:
            LockedError: If the period is locked (checked first).
            ConflictError: If the tenant already has a run for the period.
        """
        check_tenant(tenant_id)
        period = self._check_period(period, tenant_id)
        owner = require_text(owner, "owner", tenant_id)
        actor_id = require_text(actor_id, "actor_id", tenant_id)

        now = utcnow()
        run = Run(
            id=new_id(),
            tenant_id=tenant_id,
            period=period,
            status=RunStatus.DRAFT,
            owner=owner,
            notes=notes,
            created_by=actor_id,
            created_at=now,
        )

        try:
            with self.db.transaction() as conn:
                if self._is_locked(conn, tenant_id, period):
                    raise LockedError(f"Period {period} is locked", tenant_id=tenant_id)
                if self._find_run(conn, tenant_id, period) is not None:
                    raise ConflictError(
                        f"A run already exists for period {period}", tenant_id=tenant_id
                    )
                conn.execute(
                    """
                    INSERT INTO wf_run (
                        id, tenant_id, period, status, owner, notes, created_by, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run.id,
                        run.tenant_id,
                        run.period,
                        run.status.value,
                        run.owner,
                        run.notes,
                        run.created_by,
                        format_ts(run.created_at),
                    ),
                )
                EventOutbox.append(
                    conn,
                    Event.create(
                        EventType.RUN_CREATED,
                        tenant_id,
                        item_id=run.id,
                        value=run.status.value,
                        payload={"period": period, "owner": owner, "actor_id": actor_id},
                    ),
                )
        except sqlite3.IntegrityError:
            raise ConflictError(
                f"A run already exists for period {period}", tenant_id=tenant_id
            ) from None

        logger.info(f"Created run {run.id} for tenant {tenant_id} period {period}")
        return run

    def start_run(
        self,
        tenant_id: str,
        run_id: str,
        actor_id: str,
        templates: Iterable[WorkItemTemplate] | None = None,
        assignments: dict[str, Any] | None = None,
        extra_items: Iterable[WorkItemTemplate | dict[str, Any]] = (),
    ) -> Run:
        """
        Move a DRAFT run to IN_PROGRESS and materialize its work items.

        Args:
            tenant_id: Owning tenant.
            run_id: Run to start.
            actor_id: Acting identity.
            templates: Item templates; DEFAULT_CLOSE_TEMPLATES when None.
            assignments: Per-code overrides, either an owner string or a
                mapping with "owner", "approver" and/or "due_at".
            extra_items: Additional templates (or dicts) for this run only.

        Returns:
            The run. Starting a run that is not DRAFT is a no-op.

        Raises:
            LockedError: If the run's period is locked.
        """
        check_tenant(tenant_id)
        actor_id = require_text(actor_id, "actor_id", tenant_id)
        blueprints = list(DEFAULT_CLOSE_TEMPLATES if templates is None else templates)
        blueprints.extend(
            t if isinstance(t, WorkItemTemplate) else WorkItemTemplate.from_dict(t)
            for t in extra_items
        )
        codes = [t.code for t in blueprints]
        if len(codes) != len(set(codes)):
            raise ValidationError("Work item codes must be unique within a run", tenant_id=tenant_id)

        assignments = assignments or {}
        policy = self.clock.effective_policy(tenant_id)

        with self.db.transaction() as conn:
            run = self._load_run(conn, tenant_id, run_id)
            if run.status != RunStatus.DRAFT:
                logger.info(f"Run {run_id} is already {run.status.value}; start ignored")
                return run
            if self._is_locked(conn, tenant_id, run.period):
                raise LockedError(f"Period {run.period} is locked", tenant_id=tenant_id)

            default_due = default_due_at(run.period, policy)
            now = utcnow()
            conn.execute(
                """
                UPDATE wf_run SET status = ?, started_at = ?
                WHERE tenant_id = ? AND id = ? AND status = ?
                """,
                (
                    RunStatus.IN_PROGRESS.value,
                    format_ts(now),
                    tenant_id,
                    run_id,
                    RunStatus.DRAFT.value,
                ),
            )

            for template in blueprints:
                assignment = assignments.get(template.code) or {}
                if isinstance(assignment, str):
                    assignment = {"owner": assignment}
                self.lifecycle.create_item_in(
                    conn,
                    tenant_id,
                    template.kind,
                    template.code,
                    template.title,
                    owner=assignment.get("owner") or template.owner or run.owner,
                    actor_id=actor_id,
                    run_id=run_id,
                    approver=assignment.get("approver") or template.approver,
                    required_role=template.required_role,
                    due_at=assignment.get("due_at") or default_due,
                    evidence_required=template.evidence_required,
                    payload={
                        "priority": template.priority,
                        "depends_on": list(template.depends_on),
                    },
                )

            EventOutbox.append(
                conn,
                Event.create(
                    EventType.RUN_STARTED,
                    tenant_id,
                    item_id=run_id,
                    value=RunStatus.IN_PROGRESS.value,
                    payload={"items": len(blueprints), "actor_id": actor_id},
                ),
            )
            run = self._load_run(conn, tenant_id, run_id)

        logger.info(f"Started run {run_id} with {len(blueprints)} work item(s)")
        return run

    def close_run(
        self,
        tenant_id: str,
        run_id: str,
        actor_id: str,
        lock_period: bool = False,
    ) -> Run:
        """
        IN_PROGRESS -> CLOSED once every item is terminal.

        Raises:
            ValidationError: If the run is not IN_PROGRESS or has open items.
        """
        actor_id = require_text(actor_id, "actor_id", tenant_id)
        with self.db.transaction() as conn:
            run = self._load_run(conn, tenant_id, run_id)
            if run.status != RunStatus.IN_PROGRESS:
                raise ValidationError(
                    f"Cannot close run {run_id} in status {run.status.value}",
                    tenant_id=tenant_id,
                )
            open_items = conn.execute(
                """
                SELECT COUNT(*) FROM wf_work_item
                WHERE tenant_id = ? AND run_id = ? AND state NOT IN (?, ?, ?)
                """,
                (
                    tenant_id,
                    run_id,
                    WorkItemState.APPROVED.value,
                    WorkItemState.REJECTED.value,
                    WorkItemState.DONE.value,
                ),
            ).fetchone()[0]
            if open_items:
                raise ValidationError(
                    f"Run {run_id} has {open_items} unfinished work item(s)",
                    tenant_id=tenant_id,
                )

            conn.execute(
                "UPDATE wf_run SET status = ?, closed_at = ? WHERE tenant_id = ? AND id = ?",
                (RunStatus.CLOSED.value, format_ts(utcnow()), tenant_id, run_id),
            )
            EventOutbox.append(
                conn,
                Event.create(
                    EventType.RUN_CLOSED,
                    tenant_id,
                    item_id=run_id,
                    value=RunStatus.CLOSED.value,
                    payload={"actor_id": actor_id},
                ),
            )
            if lock_period:
                self._lock(conn, tenant_id, run.period, actor_id)
            run = self._load_run(conn, tenant_id, run_id)

        logger.info(f"Closed run {run_id} for period {run.period}")
        return run

    def publish_run(self, tenant_id: str, run_id: str, actor_id: str) -> Run:
        """
        CLOSED -> PUBLISHED.

        Raises:
            ValidationError: If the run is not CLOSED.
        """
        actor_id = require_text(actor_id, "actor_id", tenant_id)
        with self.db.transaction() as conn:
            run = self._load_run(conn, tenant_id, run_id)
            if run.status != RunStatus.CLOSED:
                raise ValidationError(
                    f"Cannot publish run {run_id} in status {run.status.value}",
                    tenant_id=tenant_id,
                )
            conn.execute(
                "UPDATE wf_run SET status = ? WHERE tenant_id = ? AND id = ?",
                (RunStatus.PUBLISHED.value, tenant_id, run_id),
            )
            EventOutbox.append(
                conn,
                Event.create(
                    EventType.RUN_PUBLISHED,
                    tenant_id,
                    item_id=run_id,
                    value=RunStatus.PUBLISHED.value,
                    payload={"actor_id": actor_id},
                ),
            )
            run = self._load_run(conn, tenant_id, run_id)

        logger.info(f"Published run {run_id}")
        return run

    def get_run(self, tenant_id: str, run_id: str) -> Run:
        with self.db.connection() as conn:
            return self._load_run(conn, tenant_id, run_id)

    def find_run(self, tenant_id: str, period: str) -> Run | None:
        with self.db.connection() as conn:
            return self._find_run(conn, tenant_id, period)

    def list_runs(self, tenant_id: str, status: RunStatus | None = None) -> list[Run]:
        query = "SELECT * FROM wf_run WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY period DESC"
        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Run.from_row(row) for row in rows]

    def run_progress(self, tenant_id: str, run_id: str) -> RunProgress:
        """Counts of a run's items by state, plus how many are LATE or worse."""
        with self.db.connection() as conn:
            run = self._load_run(conn, tenant_id, run_id)
            rows = conn.execute(
                """
                SELECT state, sla_severity, COUNT(*) AS n FROM wf_work_item
                WHERE tenant_id = ? AND run_id = ?
                GROUP BY state, sla_severity
                """,
                (tenant_id, run_id),
            ).fetchall()

        by_state: dict[str, int] = {}
        overdue = 0
        for row in rows:
            by_state[row["state"]] = by_state.get(row["state"], 0) + row["n"]
            if row["sla_severity"] in (SlaSeverity.LATE.value, SlaSeverity.ESCALATED.value):
                overdue += row["n"]
        completed = sum(n for state, n in by_state.items() if WorkItemState(state).is_terminal)

        return RunProgress(
            run_id=run_id,
            status=run.status,
            total=sum(by_state.values()),
            completed=completed,
            by_state=by_state,
            overdue=overdue,
        )

    # -------------------------------------------------------------------------
    # Period locks
    # -------------------------------------------------------------------------

    def lock_period(self, tenant_id: str, period: str, actor_id: str) -> PeriodLock:
        """Lock a period. Locking an already locked period returns the existing lock."""
        check_tenant(tenant_id)
        period = self._check_period(period, tenant_id)
        actor_id = require_text(actor_id, "actor_id", tenant_id)
        with self.db.transaction() as conn:
            return self._lock(conn, tenant_id, period, actor_id)

    def _lock(
        self, conn: sqlite3.Connection, tenant_id: str, period: str, actor_id: str
    ) -> PeriodLock:
        cursor = conn.execute(
            """
            INSERT INTO wf_period_lock (tenant_id, period, locked_by, locked_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (tenant_id, period) DO NOTHING
            """,
            (tenant_id, period, actor_id, format_ts(utcnow())),
        )
        if cursor.rowcount == 1:
            EventOutbox.append(
                conn,
                Event.create(
                    EventType.PERIOD_LOCKED,
                    tenant_id,
                    item_id=period,
                    payload={"actor_id": actor_id},
                ),
            )
            logger.info(f"Locked period {period} for tenant {tenant_id}")
        row = conn.execute(
            "SELECT * FROM wf_period_lock WHERE tenant_id = ? AND period = ?",
            (tenant_id, period),
        ).fetchone()
        return PeriodLock.from_row(row)

    def unlock_period(self, tenant_id: str, period: str, actor_id: str) -> bool:
        """
        Remove a period lock.

        Returns:
            True if a lock was removed.
        """
        actor_id = require_text(actor_id, "actor_id", tenant_id)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM wf_period_lock WHERE tenant_id = ? AND period = ?",
                (tenant_id, period),
            )
            removed = cursor.rowcount > 0
            if removed:
                EventOutbox.append(
                    conn,
                    Event.create(
                        EventType.PERIOD_UNLOCKED,
                        tenant_id,
                        item_id=period,
                        payload={"actor_id": actor_id},
                    ),
                )
        if removed:
            logger.info(f"Unlocked period {period} for tenant {tenant_id}")
        return removed

    def is_locked(self, tenant_id: str, period: str) -> bool:
        with self.db.connection() as conn:
            return self._is_locked(conn, tenant_id, period)

    def list_locks(self, tenant_id: str) -> list[PeriodLock]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM wf_period_lock WHERE tenant_id = ? ORDER BY period",
                (tenant_id,),
            ).fetchall()
        return [PeriodLock.from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _check_period(period: str, tenant_id: str) -> str:
        period = require_text(period, "period", tenant_id)
        if not _PERIOD.match(period):
            raise ValidationError(f"Invalid period: {period}", tenant_id=tenant_id)
        match = _MONTH_PERIOD.match(period)
        if match:
            month_period(int(match.group(1)), int(match.group(2)))
        return period

    @staticmethod
    def _is_locked(conn: sqlite3.Connection, tenant_id: str, period: str) -> bool:
        row = conn.execute(
            "SELECT 1 FROM wf_period_lock WHERE tenant_id = ? AND period = ?",
            (tenant_id, period),
        ).fetchone()
        return row is not None

    @staticmethod
    def _find_run(conn: sqlite3.Connection, tenant_id: str, period: str) -> Run | None:
        row = conn.execute(
            "SELECT * FROM wf_run WHERE tenant_id = ? AND period = ?",
            (tenant_id, period),
        ).fetchone()
        return Run.from_row(row) if row else None

    @staticmethod
    def _load_run(conn: sqlite3.Connection, tenant_id: str, run_id: str) -> Run:
        row = conn.execute(
            "SELECT * FROM wf_run WHERE tenant_id = ? AND id = ?",
            (tenant_id, run_id),
        ).fetchone()
        if row is None:
            raise NotFoundError(f"Run not found: {run_id}", tenant_id=tenant_id)
        return Run.from_row(row)
