"""
SLA clock.

The clock evaluates every OPEN or IN_PROGRESS work item with a due date and
derives a severity from how far past due it is:

    hours_overdue <= grace_hours    -> OK
    hours_overdue <= escal1_hours   -> DUE_SOON
    hours_overdue <= escal2_hours   -> LATE
    otherwise                       -> ESCALATED

First match wins. An item that has sat at LATE for longer than
LATE_ESCALATION_WINDOW is promoted to ESCALATED whatever the policy says.

The clock never lowers a severity: the stored value becomes
max(stored, computed). Only lifecycle transitions (submit, approve) reset
it to OK. An event is emitted only when the stored severity changes, and
the update is conditional on the value that was read, so re-ticking with no
elapsed time, or two racing ticks, emit nothing extra.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from govflow.errors import ValidationError
from govflow.events.models import Event, EventType
from govflow.events.outbox import EventOutbox
from govflow.storage.database import Database
from govflow.storage.models import (
    SlaPolicy,
    SlaSeverity,
    WorkItem,
    WorkItemState,
    check_tenant,
    format_ts,
    require_text,
    utcnow,
)

logger = logging.getLogger(__name__)

LATE_ESCALATION_WINDOW = timedelta(hours=24)

DEFAULT_POLICY_CODE = "MONTH_END"

SEVERITY_EVENTS = {
    SlaSeverity.DUE_SOON: EventType.SLA_DUE_SOON,
    SlaSeverity.LATE: EventType.SLA_LATE,
    SlaSeverity.ESCALATED: EventType.SLA_ESCALATED,
}

_CLOCKED_STATES = (WorkItemState.OPEN.value, WorkItemState.IN_PROGRESS.value)
_TERMINAL_STATES = (
    WorkItemState.APPROVED.value,
    WorkItemState.REJECTED.value,
    WorkItemState.DONE.value,
)


def hours_overdue(due_at: datetime, now: datetime) -> float:
    """Hours past due, never negative."""
    return max(0.0, (now - due_at).total_seconds() / 3600)


def compute_severity(overdue_hours: float, policy: SlaPolicy) -> SlaSeverity:
    """Map hours overdue to a severity; first matching threshold wins."""
    if overdue_hours <= policy.grace_hours:
        return SlaSeverity.OK
    if overdue_hours <= policy.escal1_hours:
        return SlaSeverity.DUE_SOON
    if overdue_hours <= policy.escal2_hours:
        return SlaSeverity.LATE
    return SlaSeverity.ESCALATED


def evaluate(item: WorkItem, policy: SlaPolicy, now: datetime) -> tuple[SlaSeverity, int]:
    """
    Evaluate one item against a policy.

    Returns:
        Tuple of (new severity, aging days). The severity is never lower
        than the item's stored severity.
    """
    overdue = hours_overdue(item.due_at, now) if item.due_at else 0.0
    computed = compute_severity(overdue, policy)

    if (
        item.sla_severity == SlaSeverity.LATE
        and item.sla_changed_at is not None
        and now - item.sla_changed_at > LATE_ESCALATION_WINDOW
    ):
        computed = SlaSeverity.ESCALATED

    severity = max(item.sla_severity, computed, key=lambda s: s.rank)
    return severity, int(overdue // 24)


@dataclass
class SlaTransition:
    """A severity change recorded by one tick."""

    item_id: str
    previous: SlaSeverity
    current: SlaSeverity
    hours_overdue: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_id": self.item_id,
            "previous": self.previous.value,
            "current": self.current.value,
            "hours_overdue": round(self.hours_overdue, 2),
        }


@dataclass
class TickResult:
    """
    Outcome of ticking one tenant.

    Attributes:
        tenant_id: Tenant that was ticked.
        evaluated: Number of items evaluated.
        transitions: Severity changes written (and emitted) by this tick.
        aging_updated: Items whose aging_days changed without a transition.
        skipped: True when the tenant had no applicable policy.
        error: Failure message when the tick failed.
    """

    tenant_id: str
    evaluated: int = 0
    transitions: list[SlaTransition] = field(default_factory=list)
    aging_updated: int = 0
    skipped: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "evaluated": self.evaluated,
            "transitions": [t.to_dict() for t in self.transitions],
            "aging_updated": self.aging_updated,
            "skipped": self.skipped,
            "error": self.error,
        }


@dataclass
class SlaSummary:
    """Severity counts and aging statistics for open work."""

    tenant_id: str
    run_id: str | None
    total: int
    counts: dict[str, int]
    avg_aging_days: float
    max_aging_days: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "run_id": self.run_id,
            "total": self.total,
            "counts": dict(self.counts),
            "avg_aging_days": self.avg_aging_days,
            "max_aging_days": self.max_aging_days,
        }


class SlaClock:
    """
    Periodic severity evaluator plus SLA policy storage.

    Ticks for one tenant are serialized by an in-process lock; different
    tenants tick in parallel.

    Example:
        clock = SlaClock(db, default_policy=SlaPolicy(tenant_id="*"))
        clock.upsert_policy("acme", "ops", grace_hours=0, escal1_hours=24, escal2_hours=48)
        result = clock.tick("acme")
        for transition in result.transitions:
            print(transition.item_id, transition.current.value)
    """

    def __init__(
        self,
        db: Database,
        default_policy: SlaPolicy | None = None,
        max_workers: int = 4,
    ) -> None:
        self.db = db
        self.default_policy = default_policy
        self.max_workers = max_workers
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _tenant_lock(self, tenant_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(tenant_id)
            if lock is None:
                lock = self._locks[tenant_id] = threading.Lock()
            return lock

    # -------------------------------------------------------------------------
    # Policies
    # -------------------------------------------------------------------------

    def upsert_policy(
        self,
        tenant_id: str,
        updated_by: str,
        code: str = DEFAULT_POLICY_CODE,
        tz: str = "UTC",
        cutoff_day: int = 5,
        grace_hours: int = 0,
        escal1_hours: int = 24,
        escal2_hours: int = 48,
        escal_to_lvl1: str | None = None,
        escal_to_lvl2: str | None = None,
    ) -> SlaPolicy:
        """
        Create or replace a tenant's policy.

        Raises:
            ValidationError: If thresholds are out of order or tz is unknown.
        """
        check_tenant(tenant_id)
        policy = SlaPolicy(
            tenant_id=tenant_id,
            code=require_text(code, "code", tenant_id).upper(),
            tz=tz,
            cutoff_day=int(cutoff_day),
            grace_hours=int(grace_hours),
            escal1_hours=int(escal1_hours),
            escal2_hours=int(escal2_hours),
            escal_to_lvl1=escal_to_lvl1,
            escal_to_lvl2=escal_to_lvl2,
            updated_by=require_text(updated_by, "updated_by", tenant_id),
            updated_at=utcnow(),
        )
        policy.validate()
        try:
            ZoneInfo(tz)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValidationError(f"Unknown time zone: {tz}", tenant_id=tenant_id) from None

        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT INTO wf_sla_policy (
                    tenant_id, code, tz, cutoff_day, grace_hours, escal1_hours,
                    escal2_hours, escal_to_lvl1, escal_to_lvl2, updated_by, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (tenant_id, code) DO UPDATE SET
                    tz = excluded.tz,
                    cutoff_day = excluded.cutoff_day,
                    grace_hours = excluded.grace_hours,
                    escal1_hours = excluded.escal1_hours,
                    escal2_hours = excluded.escal2_hours,
                    escal_to_lvl1 = excluded.escal_to_lvl1,
                    escal_to_lvl2 = excluded.escal_to_lvl2,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
                """,
                (
                    policy.tenant_id,
                    policy.code,
                    policy.tz,
                    policy.cutoff_day,
                    policy.grace_hours,
                    policy.escal1_hours,
                    policy.escal2_hours,
                    policy.escal_to_lvl1,
                    policy.escal_to_lvl2,
                    policy.updated_by,
                    format_ts(policy.updated_at),
                ),
            )

        logger.info(
            f"Saved SLA policy {policy.code} for tenant {tenant_id}: "
            f"grace={policy.grace_hours}h escal1={policy.escal1_hours}h "
            f"escal2={policy.escal2_hours}h"
        )
        return policy

    def get_policy(self, tenant_id: str, code: str = DEFAULT_POLICY_CODE) -> SlaPolicy | None:
        """Get a tenant's stored policy, if any."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM wf_sla_policy WHERE tenant_id = ? AND code = ?",
                (tenant_id, code.upper()),
            ).fetchone()
        return SlaPolicy.from_row(row) if row else None

    def effective_policy(self, tenant_id: str) -> SlaPolicy | None:
        """The stored policy, else the configured default, else None."""
        policy = self.get_policy(tenant_id)
        if policy is not None:
            return policy
        if self.default_policy is not None:
            return replace(self.default_policy, tenant_id=tenant_id)
        return None

    # -------------------------------------------------------------------------
    # Ticking
    # -------------------------------------------------------------------------

    def tick(
        self,
        tenant_id: str,
        now: datetime | None = None,
        run_id: str | None = None,
    ) -> TickResult:
        """
        Evaluate a tenant's open items once.

        Args:
            tenant_id: Tenant to tick.
            now: Evaluation time; current UTC time when omitted.
            run_id: Restrict evaluation to one run.
        """
        check_tenant(tenant_id)
        now = now or utcnow()
        if now.tzinfo is None:
            now = now.replace(tzinfo=UTC)

        with self._tenant_lock(tenant_id):
            policy = self.effective_policy(tenant_id)
            result = TickResult(tenant_id=tenant_id)
            if policy is None:
                logger.warning(f"No SLA policy for tenant {tenant_id}; skipping tick")
                result.skipped = True
                return result

            for item in self._clocked_items(tenant_id, run_id):
                result.evaluated += 1
                severity, aging = evaluate(item, policy, now)

                if severity != item.sla_severity:
                    if self._apply_transition(item, severity, aging, policy, now):
                        result.transitions.append(
                            SlaTransition(
                                item_id=item.id,
                                previous=item.sla_severity,
                                current=severity,
                                hours_overdue=hours_overdue(item.due_at, now),
                            )
                        )
                elif aging != item.aging_days:
                    self._update_aging(item, aging)
                    result.aging_updated += 1

        if result.transitions:
            logger.info(
                f"SLA tick for tenant {tenant_id}: {len(result.transitions)} transition(s) "
                f"across {result.evaluated} item(s)"
            )
        return result

    def _clocked_items(self, tenant_id: str, run_id: str | None) -> list[WorkItem]:
        query = (
            "SELECT * FROM wf_work_item WHERE tenant_id = ? AND due_at IS NOT NULL "
            f"AND state IN ({', '.join('?' for _ in _CLOCKED_STATES)})"
        )
        params: list[Any] = [tenant_id, *_CLOCKED_STATES]
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(run_id)
        query += " ORDER BY due_at, id"

        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [WorkItem.from_row(row) for row in rows]

    def _apply_transition(
        self,
        item: WorkItem,
        severity: SlaSeverity,
        aging: int,
        policy: SlaPolicy,
        now: datetime,
    ) -> bool:
        """Write a severity change and its event; False if another writer got there first."""
        escalate_to = None
        if severity == SlaSeverity.LATE:
            escalate_to = policy.escal_to_lvl1
        elif severity == SlaSeverity.ESCALATED:
            escalate_to = policy.escal_to_lvl2

        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE wf_work_item
                SET sla_severity = ?, sla_changed_at = ?, aging_days = ?, updated_at = ?
                WHERE tenant_id = ? AND id = ? AND sla_severity = ?
                  AND state IN ({', '.join('?' for _ in _CLOCKED_STATES)})
                """,
                (
                    severity.value,
                    format_ts(now),
                    aging,
                    format_ts(utcnow()),
                    item.tenant_id,
                    item.id,
                    item.sla_severity.value,
                    *_CLOCKED_STATES,
                ),
            )
            if cursor.rowcount != 1:
                return False

            EventOutbox.append(
                conn,
                Event.create(
                    SEVERITY_EVENTS[severity],
                    item.tenant_id,
                    item_id=item.id,
                    value=severity.value,
                    payload={
                        "previous": item.sla_severity.value,
                        "code": item.code,
                        "owner": item.owner,
                        "run_id": item.run_id,
                        "due_at": format_ts(item.due_at),
                        "aging_days": aging,
                        "escalate_to": escalate_to,
                    },
                    timestamp=now,
                ),
            )

        logger.info(
            f"Work item {item.id} SLA {item.sla_severity.value} -> {severity.value}"
        )
        return True

    def _update_aging(self, item: WorkItem, aging: int) -> None:
        with self.db.connection() as conn:
            conn.execute(
                "UPDATE wf_work_item SET aging_days = ? WHERE tenant_id = ? AND id = ?",
                (aging, item.tenant_id, item.id),
            )

    def tenants_with_open_items(self) -> list[str]:
        with self.db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT DISTINCT tenant_id FROM wf_work_item
                WHERE state IN ({', '.join('?' for _ in _CLOCKED_STATES)})
                ORDER BY tenant_id
                """,
                _CLOCKED_STATES,
            ).fetchall()
        return [row["tenant_id"] for row in rows]

    def tick_all(self, now: datetime | None = None) -> list[TickResult]:
        """
        Tick every tenant with open items, in parallel.

        A failing tenant is logged and reported in its TickResult; it never
        stops the other tenants and is never raised.
        """
        now = now or utcnow()
        tenants = self.tenants_with_open_items()
        if not tenants:
            return []

        results: list[TickResult] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {tenant: executor.submit(self.tick, tenant, now) for tenant in tenants}
            for tenant, future in futures.items():
                try:
                    results.append(future.result())
                except Exception as e:
                    logger.exception(f"SLA tick failed for tenant {tenant}")
                    results.append(TickResult(tenant_id=tenant, error=str(e)))
        return results

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def summarize(self, tenant_id: str, run_id: str | None = None) -> SlaSummary:
        """Severity counts and aging over a tenant's (or run's) non-terminal items."""
        query = (
            "SELECT sla_severity, aging_days FROM wf_work_item WHERE tenant_id = ? "
            f"AND state NOT IN ({', '.join('?' for _ in _TERMINAL_STATES)})"
        )
        params: list[Any] = [tenant_id, *_TERMINAL_STATES]
        if run_id is not None:
            query += " AND run_id = ?"
            params.append(run_id)

        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()

        counts = {s.value: 0 for s in SlaSeverity}
        for row in rows:
            counts[row["sla_severity"]] += 1
        aging = [row["aging_days"] for row in rows]

        return SlaSummary(
            tenant_id=tenant_id,
            run_id=run_id,
            total=len(rows),
            counts=counts,
            avg_aging_days=round(sum(aging) / len(aging), 2) if aging else 0.0,
            max_aging_days=max(aging, default=0),
        )
