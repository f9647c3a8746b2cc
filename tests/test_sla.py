"""
Tests for the SLA clock.

Uses Python's unittest module.
Tests severity thresholds, monotonic escalation, idempotent ticks, policy
storage and summaries.
"""

from __future__ import annotations

import shutil
import tempfile
import threading
import unittest
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import patch

from govflow.errors import ValidationError
from govflow.events.outbox import EventOutbox
from govflow.evidence.registry import EvidenceRegistry
from govflow.storage.database import Database
from govflow.storage.evidence_store import EvidenceStore
from govflow.storage.models import (
    SlaPolicy,
    SlaSeverity,
    WorkItem,
    WorkItemKind,
    WorkItemState,
)
from govflow.workflow.lifecycle import LifecycleManager
from govflow.workflow.sla import SlaClock, compute_severity, evaluate, hours_overdue

NOW = datetime(2025, 2, 10, 12, 0, tzinfo=UTC)


class TestSeverityFunctions(unittest.TestCase):
    """Tests for the pure severity helpers."""

    def setUp(self) -> None:
        """Create a 0/24/48 policy."""
        self.policy = SlaPolicy(tenant_id="acme", grace_hours=0, escal1_hours=24, escal2_hours=48)

    def test_hours_overdue_never_negative(self) -> None:
        """Test that items not yet due are zero hours overdue."""
        self.assertEqual(hours_overdue(NOW + timedelta(hours=5), NOW), 0.0)
        self.assertEqual(hours_overdue(NOW - timedelta(hours=6), NOW), 6.0)

    def test_thresholds_are_inclusive(self) -> None:
        """Test severity at and around each boundary."""
        self.assertEqual(compute_severity(0, self.policy), SlaSeverity.OK)
        self.assertEqual(compute_severity(0.5, self.policy), SlaSeverity.DUE_SOON)
        self.assertEqual(compute_severity(24, self.policy), SlaSeverity.DUE_SOON)
        self.assertEqual(compute_severity(30, self.policy), SlaSeverity.LATE)
        self.assertEqual(compute_severity(48, self.policy), SlaSeverity.LATE)
        self.assertEqual(compute_severity(50, self.policy), SlaSeverity.ESCALATED)

    def test_grace_period(self) -> None:
        """Test that overdue hours within grace stay OK."""
        policy = SlaPolicy(tenant_id="acme", grace_hours=8, escal1_hours=24, escal2_hours=48)
        self.assertEqual(compute_severity(8, policy), SlaSeverity.OK)
        self.assertEqual(compute_severity(9, policy), SlaSeverity.DUE_SOON)


class SlaTestCase(unittest.TestCase):
    """Base class with a database, lifecycle manager and clock."""

    def setUp(self) -> None:
        """Create temporary database and SLA clock."""
        self.temp_dir = tempfile.mkdtemp()
        self.db = Database(Path(self.temp_dir))
        self.lifecycle = LifecycleManager(self.db, EvidenceRegistry(self.db, EvidenceStore(self.db)))
        self.clock = SlaClock(self.db)
        self.outbox = EventOutbox(self.db)
        self.clock.upsert_policy(
            "acme", "ops", grace_hours=0, escal1_hours=24, escal2_hours=48,
            escal_to_lvl1="controller", escal_to_lvl2="cfo",
        )

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _item(self, code: str, due_at: datetime | None, tenant_id: str = "acme", **kwargs):
        return self.lifecycle.create_item(
            tenant_id,
            WorkItemKind.CLOSE_TASK,
            code,
            code.title(),
            owner="alice",
            actor_id="ops",
            due_at=due_at,
            **kwargs,
        )

    def _sla_events(self) -> list:
        return [e for e in self.outbox.pending(limit=1000) if e.type.value.startswith("SLA_")]


class TestSlaTick(SlaTestCase):
    """Tests for SlaClock.tick."""

    def test_tick_assigns_severities(self) -> None:
        """Test the three-item scenario from a 0/24/48 policy."""
        late = self._item("LATE", NOW - timedelta(hours=30))
        escalated = self._item("ESCALATED", NOW - timedelta(hours=50))
        upcoming = self._item("UPCOMING", NOW + timedelta(hours=5))

        result = self.clock.tick("acme", now=NOW)

        self.assertEqual(result.evaluated, 3)
        by_item = {t.item_id: t.current for t in result.transitions}
        self.assertEqual(
            by_item,
            {late.id: SlaSeverity.LATE, escalated.id: SlaSeverity.ESCALATED},
        )
        self.assertEqual(
            self.lifecycle.get_item("acme", upcoming.id).sla_severity, SlaSeverity.OK
        )

        events = self._sla_events()
        self.assertEqual(
            sorted(e.type.value for e in events), ["SLA_ESCALATED", "SLA_LATE"]
        )
        late_event = next(e for e in events if e.item_id == late.id)
        self.assertEqual(late_event.payload["escalate_to"], "controller")
        self.assertEqual(late_event.payload["previous"], "OK")

    def test_tick_is_idempotent(self) -> None:
        """Test that ticking twice at the same time emits nothing new."""
        self._item("LATE", NOW - timedelta(hours=30))
        self.clock.tick("acme", now=NOW)
        before = len(self._sla_events())

        again = self.clock.tick("acme", now=NOW)

        self.assertEqual(again.transitions, [])
        self.assertEqual(len(self._sla_events()), before)

    def test_severity_never_decreases(self) -> None:
        """Test that an earlier evaluation time does not lower severity."""
        item = self._item("LATE", NOW - timedelta(hours=30))
        self.clock.tick("acme", now=NOW)

        result = self.clock.tick("acme", now=NOW - timedelta(hours=29))

        self.assertEqual(result.transitions, [])
        self.assertEqual(self.lifecycle.get_item("acme", item.id).sla_severity, SlaSeverity.LATE)

    def test_late_escalates_after_window(self) -> None:
        """Test that an item left LATE for over a day is escalated."""
        self.clock.upsert_policy("acme", "ops", grace_hours=0, escal1_hours=24, escal2_hours=200)
        item = self._item("LATE", NOW - timedelta(hours=30))
        self.clock.tick("acme", now=NOW)

        within = self.clock.tick("acme", now=NOW + timedelta(hours=23))
        after = self.clock.tick("acme", now=NOW + timedelta(hours=25))

        self.assertEqual(within.transitions, [])
        self.assertEqual([t.current for t in after.transitions], [SlaSeverity.ESCALATED])
        self.assertEqual(
            self.lifecycle.get_item("acme", item.id).sla_severity, SlaSeverity.ESCALATED
        )

    def test_items_without_due_date_are_exempt(self) -> None:
        """Test that items with no due date are not evaluated."""
        self._item("NO_DUE", None)

        result = self.clock.tick("acme", now=NOW)

        self.assertEqual(result.evaluated, 0)

    def test_submitted_items_are_not_clocked(self) -> None:
        """Test that only OPEN and IN_PROGRESS items are evaluated."""
        item = self._item("SUBMITTED", NOW - timedelta(hours=30))
        self.lifecycle.submit("acme", item.id, "alice")

        result = self.clock.tick("acme", now=NOW)

        self.assertEqual(result.evaluated, 0)
        self.assertEqual(self.lifecycle.get_item("acme", item.id).state, WorkItemState.SUBMITTED)

    def test_submit_resets_severity(self) -> None:
        """Test that submitting a late item resets it to OK."""
        item = self._item("LATE", NOW - timedelta(hours=30))
        self.clock.tick("acme", now=NOW)

        submitted = self.lifecycle.submit("acme", item.id, "alice")

        self.assertEqual(submitted.sla_severity, SlaSeverity.OK)

    def test_aging_updates_without_transition(self) -> None:
        """Test that aging days advance while severity stays put."""
        item = self._item("ESCALATED", NOW - timedelta(hours=50))
        self.clock.tick("acme", now=NOW)

        result = self.clock.tick("acme", now=NOW + timedelta(days=2))

        self.assertEqual(result.transitions, [])
        self.assertEqual(result.aging_updated, 1)
        self.assertEqual(self.lifecycle.get_item("acme", item.id).aging_days, 4)

    def test_run_filter(self) -> None:
        """Test restricting a tick to one run's items."""
        self._item("IN_RUN", NOW - timedelta(hours=30), run_id="run-1")
        self._item("OTHER", NOW - timedelta(hours=30), run_id="run-2")

        result = self.clock.tick("acme", now=NOW, run_id="run-1")

        self.assertEqual(result.evaluated, 1)

    def test_no_policy_skips(self) -> None:
        """Test that a tenant without any policy is skipped."""
        self._item("LATE", NOW - timedelta(hours=30), tenant_id="globex")

        result = self.clock.tick("globex", now=NOW)

        self.assertTrue(result.skipped)
        self.assertEqual(result.evaluated, 0)

    def test_default_policy_applies(self) -> None:
        """Test that the configured default covers tenants without a policy."""
        clock = SlaClock(self.db, default_policy=SlaPolicy(tenant_id="*"))
        self._item("LATE", NOW - timedelta(hours=30), tenant_id="globex")

        result = clock.tick("globex", now=NOW)

        self.assertFalse(result.skipped)
        self.assertEqual(len(result.transitions), 1)
        self.assertEqual(clock.effective_policy("globex").tenant_id, "globex")

    def test_naive_now_is_utc(self) -> None:
        """Test that a naive evaluation time is treated as UTC."""
        self._item("LATE", NOW - timedelta(hours=30))

        result = self.clock.tick("acme", now=NOW.replace(tzinfo=None))

        self.assertEqual([t.current for t in result.transitions], [SlaSeverity.LATE])

    def test_concurrent_ticks_record_each_transition_once(self) -> None:
        """Test that clocks racing on one tenant write every transition exactly once."""
        for i in range(20):
            self._item(f"TASK_{i:02d}", NOW - timedelta(hours=30))
        clocks = [SlaClock(self.db) for _ in range(4)]
        barrier = threading.Barrier(len(clocks))
        results = []
        errors: list[Exception] = []
        lock = threading.Lock()

        def tick(clock: SlaClock) -> None:
            barrier.wait()
            try:
                result = clock.tick("acme", now=NOW)
            except Exception as e:
                with lock:
                    errors.append(e)
                return
            with lock:
                results.append(result)

        threads = [threading.Thread(target=tick, args=(clock,)) for clock in clocks]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)

        self.assertEqual(errors, [])
        self.assertEqual(sum(len(r.transitions) for r in results), 20)
        events = self._sla_events()
        self.assertEqual(len(events), 20)
        self.assertEqual(len({e.item_id for e in events}), 20)
        for item in self.lifecycle.list_items("acme"):
            self.assertEqual(item.sla_severity, SlaSeverity.LATE)


class TestSlaTickAll(SlaTestCase):
    """Tests for ticking every tenant."""

    def test_tick_all_covers_tenants(self) -> None:
        """Test that every tenant with open work is ticked."""
        self.clock.upsert_policy("globex", "ops")
        self._item("A", NOW - timedelta(hours=30))
        self._item("B", NOW - timedelta(hours=30), tenant_id="globex")

        results = self.clock.tick_all(now=NOW)

        self.assertEqual(sorted(r.tenant_id for r in results), ["acme", "globex"])
        self.assertTrue(all(r.success for r in results))

    def test_failing_tenant_does_not_stop_others(self) -> None:
        """Test that one tenant's failure is reported, not raised."""
        self.clock.upsert_policy("globex", "ops")
        self._item("A", NOW - timedelta(hours=30))
        self._item("B", NOW - timedelta(hours=30), tenant_id="globex")
        original = self.clock.tick

        def flaky(tenant_id, now=None, run_id=None):
            if tenant_id == "globex":
                raise RuntimeError("database unavailable")
            return original(tenant_id, now, run_id)

        with patch.object(self.clock, "tick", side_effect=flaky):
            results = {r.tenant_id: r for r in self.clock.tick_all(now=NOW)}

        self.assertTrue(results["acme"].success)
        self.assertEqual(len(results["acme"].transitions), 1)
        self.assertEqual(results["globex"].error, "database unavailable")

    def test_tick_all_without_work(self) -> None:
        """Test that no open items means no results."""
        self.assertEqual(self.clock.tick_all(now=NOW), [])


class TestSlaPolicies(SlaTestCase):
    """Tests for policy storage and summaries."""

    def test_upsert_replaces_policy(self) -> None:
        """Test that saving a policy twice keeps the latest values."""
        self.clock.upsert_policy("acme", "ops", tz="Europe/Berlin", cutoff_day=3)

        policy = self.clock.get_policy("acme")

        self.assertEqual(policy.tz, "Europe/Berlin")
        self.assertEqual(policy.cutoff_day, 3)
        self.assertIsNone(policy.escal_to_lvl1)

    def test_upsert_rejects_bad_thresholds(self) -> None:
        """Test that out-of-order thresholds are rejected."""
        with self.assertRaises(ValidationError):
            self.clock.upsert_policy("acme", "ops", escal1_hours=72, escal2_hours=48)

    def test_upsert_rejects_unknown_zone(self) -> None:
        """Test that an unknown time zone is rejected."""
        with self.assertRaises(ValidationError):
            self.clock.upsert_policy("acme", "ops", tz="Mars/Olympus_Mons")

    def test_summarize(self) -> None:
        """Test counts and aging over non-terminal items."""
        self._item("LATE", NOW - timedelta(hours=30))
        self._item("ESCALATED", NOW - timedelta(hours=50))
        self._item("UPCOMING", NOW + timedelta(hours=5))
        done = self._item("DONE", NOW - timedelta(hours=100))
        self.lifecycle.complete("acme", done.id, "alice")
        self.clock.tick("acme", now=NOW)

        summary = self.clock.summarize("acme")

        self.assertEqual(summary.total, 3)
        self.assertEqual(summary.counts["LATE"], 1)
        self.assertEqual(summary.counts["ESCALATED"], 1)
        self.assertEqual(summary.counts["OK"], 1)
        self.assertEqual(summary.max_aging_days, 2)
        self.assertEqual(summary.avg_aging_days, 1.0)


class TestEvaluate(unittest.TestCase):
    """Tests for evaluate on in-memory items."""

    def test_evaluate_keeps_higher_stored_severity(self) -> None:
        """Test that evaluate returns max(stored, computed)."""
        item = WorkItem(
            id="i1",
            tenant_id="acme",
            kind=WorkItemKind.CLOSE_TASK,
            code="X",
            title="X",
            owner="alice",
            state=WorkItemState.OPEN,
            sla_severity=SlaSeverity.ESCALATED,
            created_at=NOW,
            updated_at=NOW,
            due_at=NOW + timedelta(hours=1),
        )
        severity, aging = evaluate(item, SlaPolicy(tenant_id="acme"), NOW)

        self.assertEqual(severity, SlaSeverity.ESCALATED)
        self.assertEqual(aging, 0)


if __name__ == "__main__":
    unittest.main()
