"""
Tests for the work-item lifecycle.

Uses Python's unittest module.
Tests state transitions, actor guards, evidence requirements and the
events each transition emits.
"""

from __future__ import annotations

import shutil
import tempfile
import unittest
from pathlib import Path

from govflow.errors import ForbiddenError, NotFoundError, ValidationError
from govflow.events.outbox import EventOutbox
from govflow.evidence.registry import EvidenceRegistry
from govflow.storage.database import Database
from govflow.storage.evidence_store import EvidenceStore
from govflow.storage.models import Role, SlaSeverity, WorkItemKind, WorkItemState
from govflow.workflow.lifecycle import LifecycleManager


class TestLifecycleManager(unittest.TestCase):
    """Tests for LifecycleManager transitions."""

    def setUp(self) -> None:
        """Create temporary database and lifecycle manager."""
        self.temp_dir = tempfile.mkdtemp()
        self.db = Database(Path(self.temp_dir))
        self.store = EvidenceStore(self.db)
        self.registry = EvidenceRegistry(self.db, self.store)
        self.lifecycle = LifecycleManager(self.db, self.registry)
        self.outbox = EventOutbox(self.db)

    def tearDown(self) -> None:
        """Clean up temporary directory."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _item(self, **kwargs):
        defaults = {
            "tenant_id": "acme",
            "kind": WorkItemKind.CLOSE_TASK,
            "code": "BANK_RECONCILE",
            "title": "Bank reconciliation",
            "owner": "alice",
            "actor_id": "ops",
            "approver": "carol",
            "required_role": Role.CONTROLLER,
        }
        defaults.update(kwargs)
        return self.lifecycle.create_item(**defaults)

    def _record(self) -> str:
        obj = self.store.put("acme", b"%PDF statement", "application/pdf", "alice")
        record = self.registry.create_record(
            "acme",
            obj.id,
            {"source": "BANK", "source_id": "STMT-1", "title": "Statement"},
            "alice",
        )
        return record.id

    def _event_types(self) -> list[str]:
        return [e.type.value for e in self.outbox.pending(limit=1000)]

    def test_create_item(self) -> None:
        """Test that new items start OPEN with OK severity."""
        item = self._item()

        self.assertEqual(item.state, WorkItemState.OPEN)
        self.assertEqual(item.sla_severity, SlaSeverity.OK)
        self.assertEqual(self.lifecycle.get_item("acme", item.id).code, "BANK_RECONCILE")
        self.assertEqual(self._event_types(), ["WORK_ITEM_CREATED"])

    def test_create_item_invalid_kind(self) -> None:
        """Test that an unknown kind is rejected."""
        with self.assertRaises(ValidationError):
            self._item(kind="PROJECT")

    def test_create_item_with_parent(self) -> None:
        """Test that parents are stored by id and resolved on demand."""
        parent = self._item(kind=WorkItemKind.CTRL_RUN, code="CTRL-1")
        child = self._item(kind="test_plan", code="TP-1", parent_id=parent.id)

        self.assertEqual(child.kind, WorkItemKind.TEST_PLAN)
        self.assertEqual(self.lifecycle.get_parent(child).id, parent.id)
        self.assertIsNone(self.lifecycle.get_parent(parent))

    def test_create_item_unknown_parent(self) -> None:
        """Test that a missing parent raises NotFoundError."""
        with self.assertRaises(NotFoundError):
            self._item(parent_id="missing")

    def test_approval_path(self) -> None:
        """Test start, submit and approve by an authorized approver."""
        item = self._item()

        self.lifecycle.start("acme", item.id, "alice")
        submitted = self.lifecycle.submit("acme", item.id, "alice", payload={"variance": 0})
        approved = self.lifecycle.approve("acme", item.id, "carol", Role.CONTROLLER)

        self.assertEqual(submitted.state, WorkItemState.SUBMITTED)
        self.assertEqual(submitted.payload["answers"], {"variance": 0})
        self.assertIsNotNone(submitted.submitted_at)
        self.assertEqual(approved.state, WorkItemState.APPROVED)
        self.assertEqual(approved.approver, "carol")
        self.assertIsNotNone(approved.approved_at)
        self.assertEqual(
            self._event_types(),
            [
                "WORK_ITEM_CREATED",
                "WORK_ITEM_STARTED",
                "WORK_ITEM_SUBMITTED",
                "WORK_ITEM_APPROVED",
            ],
        )

    def test_submit_from_open(self) -> None:
        """Test that an item can be submitted without being started."""
        item = self._item()
        self.assertEqual(
            self.lifecycle.submit("acme", item.id, "alice").state, WorkItemState.SUBMITTED
        )

    def test_only_owner_may_start_or_submit(self) -> None:
        """Test that non-owners are forbidden."""
        item = self._item()

        with self.assertRaises(ForbiddenError):
            self.lifecycle.start("acme", item.id, "mallory")
        with self.assertRaises(ForbiddenError):
            self.lifecycle.submit("acme", item.id, "mallory")
        self.assertEqual(self.lifecycle.get_item("acme", item.id).state, WorkItemState.OPEN)

    def test_approve_requires_role(self) -> None:
        """Test that a role below the required role is forbidden."""
        item = self._item()
        self.lifecycle.submit("acme", item.id, "alice")

        with self.assertRaises(ForbiddenError):
            self.lifecycle.approve("acme", item.id, "carol", Role.MANAGER)

        approved = self.lifecycle.approve("acme", item.id, "dave", Role.CFO)
        self.assertEqual(approved.approver, "dave")

    def test_approve_requires_submitted(self) -> None:
        """Test that approving an OPEN item is invalid."""
        item = self._item()
        with self.assertRaises(ValidationError):
            self.lifecycle.approve("acme", item.id, "carol", Role.CFO)

    def test_state_checked_before_actor(self) -> None:
        """Test that a wrong state wins over a wrong actor."""
        item = self._item()
        with self.assertRaises(ValidationError):
            self.lifecycle.return_item("acme", item.id, "mallory", "redo")

    def test_return_and_resubmit(self) -> None:
        """Test that a returned item goes back to the owner."""
        item = self._item()
        self.lifecycle.submit("acme", item.id, "alice")

        returned = self.lifecycle.return_item("acme", item.id, "carol", "Missing statement")
        self.assertEqual(returned.state, WorkItemState.RETURNED)
        self.assertEqual(returned.return_reason, "Missing statement")

        with self.assertRaises(ValidationError):
            self.lifecycle.submit("acme", item.id, "alice")

        self.lifecycle.start("acme", item.id, "alice")
        self.assertEqual(
            self.lifecycle.submit("acme", item.id, "alice").state, WorkItemState.SUBMITTED
        )

    def test_return_requires_designated_approver(self) -> None:
        """Test that only the designated approver may return an item."""
        item = self._item()
        self.lifecycle.submit("acme", item.id, "alice")

        with self.assertRaises(ForbiddenError):
            self.lifecycle.return_item("acme", item.id, "dave", "No")

    def test_return_requires_reason(self) -> None:
        """Test that an empty reason is rejected."""
        item = self._item()
        self.lifecycle.submit("acme", item.id, "alice")

        with self.assertRaises(ValidationError):
            self.lifecycle.return_item("acme", item.id, "carol", "  ")

    def test_reject_is_terminal(self) -> None:
        """Test that rejected items accept no further transitions."""
        item = self._item()
        self.lifecycle.submit("acme", item.id, "alice")

        rejected = self.lifecycle.reject("acme", item.id, "carol", "controller", "Wrong period")

        self.assertEqual(rejected.state, WorkItemState.REJECTED)
        self.assertEqual(rejected.return_reason, "Wrong period")
        with self.assertRaises(ValidationError):
            self.lifecycle.start("acme", item.id, "alice")
        with self.assertRaises(ValidationError):
            self.lifecycle.approve("acme", item.id, "carol", Role.CFO)

    def test_complete_without_approver(self) -> None:
        """Test that items without an approver complete directly."""
        item = self._item(approver=None)

        done = self.lifecycle.complete("acme", item.id, "alice")

        self.assertEqual(done.state, WorkItemState.DONE)
        self.assertIn("WORK_ITEM_COMPLETED", self._event_types())
        with self.assertRaises(ValidationError):
            self.lifecycle.complete("acme", item.id, "alice")

    def test_complete_with_approver_is_invalid(self) -> None:
        """Test that items needing approval cannot be completed."""
        item = self._item()
        with self.assertRaises(ValidationError):
            self.lifecycle.complete("acme", item.id, "alice")

    def test_evidence_required_blocks_submit(self) -> None:
        """Test that submit fails without linked evidence."""
        item = self._item(evidence_required=True)

        with self.assertRaises(ValidationError):
            self.lifecycle.submit("acme", item.id, "alice")
        self.assertEqual(self.lifecycle.get_item("acme", item.id).state, WorkItemState.OPEN)

    def test_submit_links_evidence(self) -> None:
        """Test that records passed to submit satisfy the evidence rule."""
        item = self._item(evidence_required=True)
        record_id = self._record()

        submitted = self.lifecycle.submit(
            "acme", item.id, "alice", evidence_record_ids=[record_id]
        )

        self.assertEqual(submitted.state, WorkItemState.SUBMITTED)
        linked = self.registry.query_by_ref("acme", "CLOSE_TASK", item.id)
        self.assertEqual([r.id for r in linked], [record_id])

    def test_failed_submit_leaves_no_links(self) -> None:
        """Test that a forbidden submit does not link its evidence."""
        item = self._item(evidence_required=True)
        record_id = self._record()

        with self.assertRaises(ForbiddenError):
            self.lifecycle.submit("acme", item.id, "mallory", evidence_record_ids=[record_id])

        self.assertEqual(self.registry.count_by_ref("acme", "CLOSE_TASK", item.id), 0)

    def test_submit_unknown_record(self) -> None:
        """Test that an unknown evidence record aborts the submit."""
        item = self._item()
        with self.assertRaises(NotFoundError):
            self.lifecycle.submit("acme", item.id, "alice", evidence_record_ids=["missing"])
        self.assertEqual(self.lifecycle.get_item("acme", item.id).state, WorkItemState.OPEN)

    def test_evidence_required_blocks_complete(self) -> None:
        """Test that complete also enforces the evidence rule."""
        item = self._item(approver=None, evidence_required=True)
        with self.assertRaises(ValidationError):
            self.lifecycle.complete("acme", item.id, "alice")

    def test_tenant_isolation(self) -> None:
        """Test that items are invisible to other tenants."""
        item = self._item()
        with self.assertRaises(NotFoundError):
            self.lifecycle.get_item("globex", item.id)
        with self.assertRaises(NotFoundError):
            self.lifecycle.start("globex", item.id, "alice")

    def test_list_items_by_state(self) -> None:
        """Test filtering listed items by state."""
        first = self._item(code="A")
        self._item(code="B")
        self.lifecycle.start("acme", first.id, "alice")

        in_progress = self.lifecycle.list_items("acme", states=[WorkItemState.IN_PROGRESS])
        everything = self.lifecycle.list_items("acme")

        self.assertEqual([i.code for i in in_progress], ["A"])
        self.assertEqual(len(everything), 2)


if __name__ == "__main__":
    unittest.main()
