"""
Tests for the run orchestrator.

Uses Python's unittest module.
Tests run creation, item materialization, closing and publishing, progress
reporting and period locks.
"""

from __future__ import annotations

import shutil
import tempfile
import unittest
from datetime import UTC, datetime
from pathlib import Path

from govflow.errors import ConflictError, LockedError, NotFoundError, ValidationError
from govflow.events.outbox import EventOutbox
from govflow.evidence.registry import EvidenceRegistry
from govflow.storage.database import Database
from govflow.storage.evidence_store import EvidenceStore
from govflow.storage.models import (
    Role,
    RunStatus,
    SlaPolicy,
    SlaSeverity,
    WorkItemKind,
    WorkItemState,
)
from govflow.workflow.lifecycle import LifecycleManager
from govflow.workflow.orchestrator import (
    DEFAULT_CLOSE_TEMPLATES,
    RunOrchestrator,
    WorkItemTemplate,
    default_due_at,
    month_period,
)
from govflow.workflow.sla import SlaClock


class TestPeriodHelpers(unittest.TestCase):
    """Tests for period and due-date helpers."""

    def test_month_period(self) -> None:
        """Test formatting and range checks."""
        self.assertEqual(month_period(2025, 1), "2025-01")
        with self.assertRaises(ValidationError):
            month_period(1999, 12)
        with self.assertRaises(ValidationError):
            month_period(2025, 13)

    def test_default_due_at(self) -> None:
        """Test that items fall due on the next month's cutoff day."""
        policy = SlaPolicy(tenant_id="acme", cutoff_day=5)
        self.assertEqual(
            default_due_at("2025-01", policy), datetime(2025, 2, 5, 17, tzinfo=UTC)
        )
        self.assertEqual(
            default_due_at("2025-12", policy), datetime(2026, 1, 5, 17, tzinfo=UTC)
        )

    def test_default_due_at_uses_policy_zone(self) -> None:
        """Test that the due hour is local to the policy's time zone."""
        policy = SlaPolicy(tenant_id="acme", tz="Europe/Berlin", cutoff_day=3)
        self.assertEqual(
            default_due_at("2025-01", policy), datetime(2025, 2, 3, 16, tzinfo=UTC)
        )

    def test_default_due_at_without_month(self) -> None:
        """Test that non-monthly periods and missing policies have no default."""
        policy = SlaPolicy(tenant_id="acme")
        self.assertIsNone(default_due_at("2025-Q1", policy))
        self.assertIsNone(default_due_at("2025-01", None))

    def test_template_from_dict(self) -> None:
        """Test building a template from a mapping."""
        template = WorkItemTemplate.from_dict(
            {"code": "SOX_404", "title": "SOX 404 test", "kind": "test_plan",
             "required_role": "auditor", "depends_on": ["GL_RECONCILE"]}
        )
        self.assertEqual(template.kind, WorkItemKind.TEST_PLAN)
        self.assertEqual(template.required_role, Role.AUDITOR)
        self.assertEqual(template.depends_on, ("GL_RECONCILE",))


class TestRunOrchestrator(unittest.TestCase):
    """Tests for RunOrchestrator."""

    def setUp(self) -> None:
        """Create temporary database and orchestrator."""
        self.temp_dir = tempfile.mkdtemp()
        self.db = Database(Path(self.temp_dir))
        self.registry = EvidenceRegistry(self.db, EvidenceStore(self.db))
        self.lifecycle = LifecycleManager(self.db, self.registry)
        self.clock = SlaClock(self.db, default_policy=SlaPolicy(tenant_id="*"))
        self.orchestrator = RunOrchestrator(self.db, self.lifecycle, self.clock)
        self.outbox = EventOutbox(self.db)

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _started_run(self, templates=None):
        run = self.orchestrator.create_run("acme", "2025-01", "alice", "ops")
        return self.orchestrator.start_run("acme", run.id, "ops", templates=templates)

    def test_create_run(self) -> None:
        """Test that a new run is DRAFT and findable by period."""
        run = self.orchestrator.create_run("acme", "2025-01", "alice", "ops", notes="January")

        self.assertEqual(run.status, RunStatus.DRAFT)
        self.assertEqual(self.orchestrator.find_run("acme", "2025-01").id, run.id)
        self.assertEqual(self.orchestrator.get_run("acme", run.id).notes, "January")

    def test_duplicate_period_conflicts(self) -> None:
        """Test that a second run for the same period is a conflict."""
        self.orchestrator.create_run("acme", "2025-01", "alice", "ops")

        with self.assertRaises(ConflictError):
            self.orchestrator.create_run("acme", "2025-01", "bob", "ops")

    def test_same_period_other_tenant(self) -> None:
        """Test that periods are unique per tenant only."""
        self.orchestrator.create_run("acme", "2025-01", "alice", "ops")
        run = self.orchestrator.create_run("globex", "2025-01", "hank", "ops")
        self.assertEqual(run.tenant_id, "globex")

    def test_invalid_period(self) -> None:
        """Test that malformed periods are rejected."""
        for period in ("2025-13", "2025/01", ""):
            with self.assertRaises(ValidationError):
                self.orchestrator.create_run("acme", period, "alice", "ops")

    def test_locked_period_checked_before_duplicate(self) -> None:
        """Test that a locked period wins over an existing run."""
        self.orchestrator.create_run("acme", "2025-01", "alice", "ops")
        self.orchestrator.lock_period("acme", "2025-01", "ops")

        with self.assertRaises(LockedError):
            self.orchestrator.create_run("acme", "2025-01", "alice", "ops")

    def test_start_run_creates_default_items(self) -> None:
        """Test that starting a run materializes the close templates."""
        run = self._started_run()

        self.assertEqual(run.status, RunStatus.IN_PROGRESS)
        self.assertIsNotNone(run.started_at)
        items = self.lifecycle.list_items("acme", run_id=run.id)
        self.assertEqual(len(items), len(DEFAULT_CLOSE_TEMPLATES))
        self.assertEqual(len(items), 10)

        by_code = {item.code: item for item in items}
        self.assertTrue(by_code["BANK_RECONCILE"].evidence_required)
        self.assertFalse(by_code["DEPR_CALC"].evidence_required)
        self.assertEqual(by_code["TRIAL_BALANCE"].payload["depends_on"][0], "GL_RECONCILE")
        for item in items:
            self.assertEqual(item.owner, "alice")
            self.assertEqual(item.state, WorkItemState.OPEN)
            self.assertEqual(item.due_at, datetime(2025, 2, 5, 17, tzinfo=UTC))

    def test_start_run_assignments(self) -> None:
        """Test per-code owner and approver overrides."""
        run = self.orchestrator.create_run("acme", "2025-01", "alice", "ops")
        self.orchestrator.start_run(
            "acme",
            run.id,
            "ops",
            assignments={
                "BANK_RECONCILE": "bob",
                "GL_RECONCILE": {"owner": "erin", "approver": "carol"},
            },
        )

        by_code = {i.code: i for i in self.lifecycle.list_items("acme", run_id=run.id)}
        self.assertEqual(by_code["BANK_RECONCILE"].owner, "bob")
        self.assertEqual(by_code["GL_RECONCILE"].owner, "erin")
        self.assertEqual(by_code["GL_RECONCILE"].approver, "carol")
        self.assertIsNone(by_code["AR_AGING"].approver)

    def test_start_run_extra_items(self) -> None:
        """Test adding run-specific items."""
        run = self.orchestrator.create_run("acme", "2025-01", "alice", "ops")
        self.orchestrator.start_run(
            "acme", run.id, "ops", extra_items=[{"code": "AUDIT_PBC", "title": "Audit requests"}]
        )
        self.assertEqual(len(self.lifecycle.list_items("acme", run_id=run.id)), 11)

    def test_duplicate_template_codes(self) -> None:
        """Test that repeated item codes are rejected."""
        run = self.orchestrator.create_run("acme", "2025-01", "alice", "ops")
        with self.assertRaises(ValidationError):
            self.orchestrator.start_run(
                "acme", run.id, "ops", extra_items=[{"code": "AR_AGING", "title": "Again"}]
            )
        self.assertEqual(self.orchestrator.get_run("acme", run.id).status, RunStatus.DRAFT)

    def test_start_run_twice_is_noop(self) -> None:
        """Test that starting an already started run changes nothing."""
        run = self._started_run()

        again = self.orchestrator.start_run("acme", run.id, "ops")

        self.assertEqual(again.status, RunStatus.IN_PROGRESS)
        self.assertEqual(len(self.lifecycle.list_items("acme", run_id=run.id)), 10)

    def test_start_run_in_locked_period(self) -> None:
        """Test that a locked period blocks starting a run."""
        run = self.orchestrator.create_run("acme", "2025-01", "alice", "ops")
        self.orchestrator.lock_period("acme", "2025-01", "ops")

        with self.assertRaises(LockedError):
            self.orchestrator.start_run("acme", run.id, "ops")
        self.assertEqual(self.lifecycle.list_items("acme", run_id=run.id), [])

    def test_start_unknown_run(self) -> None:
        """Test that starting a missing run raises NotFoundError."""
        with self.assertRaises(NotFoundError):
            self.orchestrator.start_run("acme", "missing", "ops")

    def test_close_requires_terminal_items(self) -> None:
        """Test that a run with open items cannot close."""
        run = self._started_run()
        with self.assertRaises(ValidationError):
            self.orchestrator.close_run("acme", run.id, "ops")

    def test_close_and_publish(self) -> None:
        """Test the full run status progression."""
        templates = [
            WorkItemTemplate("DEPR_CALC", "Depreciation"),
            WorkItemTemplate("FX_REVALUE", "FX revaluation", approver="carol",
                             required_role=Role.CONTROLLER),
        ]
        run = self._started_run(templates=templates)
        by_code = {i.code: i for i in self.lifecycle.list_items("acme", run_id=run.id)}
        self.lifecycle.complete("acme", by_code["DEPR_CALC"].id, "alice")
        self.lifecycle.submit("acme", by_code["FX_REVALUE"].id, "alice")
        self.lifecycle.reject("acme", by_code["FX_REVALUE"].id, "carol", Role.CONTROLLER, "Stale rates")

        with self.assertRaises(ValidationError):
            self.orchestrator.publish_run("acme", run.id, "ops")

        closed = self.orchestrator.close_run("acme", run.id, "ops", lock_period=True)
        self.assertEqual(closed.status, RunStatus.CLOSED)
        self.assertIsNotNone(closed.closed_at)
        self.assertTrue(self.orchestrator.is_locked("acme", "2025-01"))

        published = self.orchestrator.publish_run("acme", run.id, "ops")
        self.assertEqual(published.status, RunStatus.PUBLISHED)

        types = [e.type.value for e in self.outbox.pending(limit=1000)]
        for expected in ("RUN_CREATED", "RUN_STARTED", "RUN_CLOSED", "PERIOD_LOCKED", "RUN_PUBLISHED"):
            self.assertIn(expected, types)

    def test_close_draft_run(self) -> None:
        """Test that a DRAFT run cannot be closed."""
        run = self.orchestrator.create_run("acme", "2025-01", "alice", "ops")
        with self.assertRaises(ValidationError):
            self.orchestrator.close_run("acme", run.id, "ops")

    def test_run_progress(self) -> None:
        """Test progress counts by state and overdue items."""
        templates = [WorkItemTemplate("A", "A"), WorkItemTemplate("B", "B"), WorkItemTemplate("C", "C")]
        run = self._started_run(templates=templates)
        by_code = {i.code: i for i in self.lifecycle.list_items("acme", run_id=run.id)}
        self.lifecycle.complete("acme", by_code["A"].id, "alice")
        self.lifecycle.start("acme", by_code["B"].id, "alice")
        self.clock.tick("acme", now=datetime(2025, 2, 7, 12, tzinfo=UTC))

        progress = self.orchestrator.run_progress("acme", run.id)

        self.assertEqual(progress.total, 3)
        self.assertEqual(progress.completed, 1)
        self.assertEqual(progress.by_state, {"DONE": 1, "IN_PROGRESS": 1, "OPEN": 1})
        self.assertEqual(progress.overdue, 2)
        self.assertEqual(progress.percent_complete, 33.3)
        self.assertEqual(progress.to_dict()["status"], "IN_PROGRESS")
        item = self.lifecycle.get_item("acme", by_code["C"].id)
        self.assertEqual(item.sla_severity, SlaSeverity.LATE)

    def test_lock_is_idempotent(self) -> None:
        """Test that locking twice keeps the first lock."""
        first = self.orchestrator.lock_period("acme", "2025-01", "ops")
        second = self.orchestrator.lock_period("acme", "2025-01", "someone-else")

        self.assertEqual(second.locked_by, first.locked_by)
        self.assertEqual(len(self.orchestrator.list_locks("acme")), 1)

    def test_unlock_period(self) -> None:
        """Test that unlocking reports whether a lock existed."""
        self.orchestrator.lock_period("acme", "2025-01", "ops")

        self.assertTrue(self.orchestrator.unlock_period("acme", "2025-01", "ops"))
        self.assertFalse(self.orchestrator.unlock_period("acme", "2025-01", "ops"))
        self.assertFalse(self.orchestrator.is_locked("acme", "2025-01"))
        self.orchestrator.create_run("acme", "2025-01", "alice", "ops")

    def test_list_runs(self) -> None:
        """Test that runs list newest period first."""
        self.orchestrator.create_run("acme", "2025-01", "alice", "ops")
        self.orchestrator.create_run("acme", "2025-02", "alice", "ops")

        periods = [run.period for run in self.orchestrator.list_runs("acme")]

        self.assertEqual(periods, ["2025-02", "2025-01"])


if __name__ == "__main__":
    unittest.main()
