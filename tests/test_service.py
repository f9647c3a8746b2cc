"""
End-to-end tests for the governance service.

Uses Python's unittest module.
Drives a month-end close through the service facade: run creation,
evidence upload, item approval, SLA ticks, manifests, binders and
attestations, with events captured by a memory sink.
"""

from __future__ import annotations

import shutil
import tempfile
import unittest
from datetime import UTC, datetime
from pathlib import Path

from govflow.config.settings import Settings
from govflow.errors import ConflictError, ForbiddenError, IntegrityError, ValidationError
from govflow.evidence.attestation import generate_signing_key
from govflow.events.sinks import LoggingEventSink, MemoryEventSink
from govflow.service import GovernanceService
from govflow.storage.models import RunStatus, SlaSeverity, WorkItemState


class TestGovernanceService(unittest.TestCase):
    """Tests for GovernanceService."""

    def setUp(self) -> None:
        """Create a service over a temporary data directory."""
        self.temp_dir = tempfile.mkdtemp()
        self.settings = Settings(data_dir=str(Path(self.temp_dir) / "data"))
        self.settings.events.sink = "none"
        self.service = GovernanceService.from_settings(self.settings)
        self.sink = MemoryEventSink()
        self.service.sink = self.sink

    def tearDown(self) -> None:
        """Close the service and clean up."""
        self.service.close()
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _start_january(self, **kwargs):
        run = self.service.create_run("acme", "ops", year=2025, month=1, owner="alice")
        return self.service.start_run("acme", "ops", run.id, **kwargs)

    def _items(self, run_id: str) -> dict:
        return {i.code: i for i in self.service.list_work_items("acme", run_id=run_id)}

    def test_from_settings(self) -> None:
        """Test wiring from default settings."""
        stats = self.service.statistics("acme")

        self.assertFalse(stats["signing_enabled"])
        self.assertEqual(stats["objects"], {"object_count": 0, "total_bytes": 0})
        self.assertEqual(self.service.get_sla_policy("acme").code, "MONTH_END")

        self.settings.events.sink = "log"
        service = GovernanceService.from_settings(self.settings)
        self.assertIsInstance(service.sink, LoggingEventSink)

    def test_sla_default_disabled(self) -> None:
        """Test that disabling the default policy leaves tenants without one."""
        self.settings.sla.enabled = False
        service = GovernanceService.from_settings(self.settings)
        self.assertIsNone(service.get_sla_policy("acme"))

    def test_create_run_requires_period(self) -> None:
        """Test that a period or a year and month are required."""
        with self.assertRaises(ValidationError):
            self.service.create_run("acme", "ops", year=2025)

    def test_duplicate_run(self) -> None:
        """Test that the same period cannot be opened twice."""
        self.service.create_run("acme", "ops", period="2025-01")
        with self.assertRaises(ConflictError):
            self.service.create_run("acme", "ops", year=2025, month=1)

    def test_events_are_dispatched(self) -> None:
        """Test that mutations hand their events to the sink."""
        run = self._start_january()

        self.assertEqual(len(self.sink.of_type("RUN_CREATED")), 1)
        self.assertEqual(len(self.sink.of_type("RUN_STARTED")), 1)
        self.assertEqual(len(self.sink.of_type("WORK_ITEM_CREATED")), 10)
        self.assertEqual(self.service.outbox.pending_count(), 0)
        self.assertEqual(self.sink.of_type("RUN_STARTED")[0].item_id, run.id)

    def test_upload_evidence_dedup(self) -> None:
        """Test that identical uploads share an object but not a record."""
        metadata = {"source": "bank", "source_id": "STMT-1", "title": "Statement"}
        first = self.service.upload_evidence("acme", "alice", b"%PDF stmt", "application/pdf", metadata)
        second = self.service.upload_evidence("acme", "bob", b"%PDF stmt", "application/pdf", metadata)

        self.assertFalse(first.deduplicated)
        self.assertTrue(second.deduplicated)
        self.assertEqual(first.object.id, second.object.id)
        self.assertNotEqual(first.record.id, second.record.id)
        self.assertIsNone(first.to_dict()["link"])

    def test_upload_declared_hash_mismatch(self) -> None:
        """Test that a bad declared hash stores nothing."""
        with self.assertRaises(IntegrityError):
            self.service.upload_evidence(
                "acme",
                "alice",
                b"%PDF stmt",
                "application/pdf",
                {"source": "bank", "source_id": "1", "title": "T"},
                declared_sha256="0" * 64,
            )
        self.assertEqual(self.service.statistics()["tables"]["evd_object"], 0)

    def test_upload_file_and_link(self) -> None:
        """Test uploading from a path and linking in one call."""
        path = Path(self.temp_dir) / "ledger.csv"
        path.write_bytes(b"account,amount\n1000,5\n")

        result = self.service.upload_evidence(
            "acme",
            "alice",
            path,
            "text/csv",
            {"source": "erp", "source_id": "GL-1", "title": "Ledger"},
            link_kind="close_task",
            link_ref_id="item-1",
        )

        self.assertEqual(result.link.ref, "CLOSE_TASK:item-1")
        records = self.service.query_evidence("acme", "CLOSE_TASK", "item-1")
        self.assertEqual([r.id for r in records], [result.record.id])
        self.assertEqual(len(self.sink.of_type("EVIDENCE_LINKED")), 1)

    def test_month_end_close(self) -> None:
        """Test a complete close from run creation to attestation."""
        key_path = Path(self.temp_dir) / "signing.pem"
        generate_signing_key(key_path)
        self.settings.attestation.signing_key_path = str(key_path)
        self.service = GovernanceService.from_settings(self.settings)
        self.service.sink = self.sink

        run = self._start_january(
            assignments={"BANK_RECONCILE": {"owner": "bob", "approver": "carol"}}
        )
        items = self._items(run.id)
        bank = items["BANK_RECONCILE"]

        # Evidence is required before the bank reconciliation can be submitted
        with self.assertRaises(ValidationError):
            self.service.submit_work_item("acme", "bob", bank.id)

        upload = self.service.upload_evidence(
            "acme",
            "bob",
            b"%PDF bank statement",
            "application/pdf",
            {"source": "bank", "source_id": "STMT-2025-01", "title": "January statement"},
        )
        self.service.submit_work_item(
            "acme", "bob", bank.id, payload={"difference": 0},
            evidence_record_ids=[upload.record.id],
        )
        with self.assertRaises(ForbiddenError):
            self.service.return_work_item("acme", "erin", bank.id, "Not my item")
        self.service.return_work_item("acme", "carol", bank.id, "Attach the bank letter")
        self.service.start_work_item("acme", "bob", bank.id)
        self.service.submit_work_item("acme", "bob", bank.id)
        approved = self.service.approve_work_item("acme", "carol", bank.id, "controller")
        self.assertEqual(approved.state, WorkItemState.APPROVED)

        manifest = self.service.build_manifest("acme", "carol", "CLOSE_TASK", bank.id)
        self.assertEqual(manifest.object_count, 1)
        self.assertTrue(self.service.verify_manifest("acme", manifest.id))

        binder = self.service.build_binder("acme", "carol", manifest.id, "zip", "bank-2025-01")
        again = self.service.build_binder("acme", "carol", manifest.id, "zip", "bank-2025-01")
        self.assertEqual(binder.id, again.id)
        self.assertTrue(self.service.verify_binder("acme", binder.id))

        attestation = self.service.sign_attestation(
            "acme", "carol", binder.id, "controller", "January bank evidence is complete."
        )
        self.assertEqual(attestation.signer_id, "carol")
        self.assertIsNotNone(attestation.signature)
        self.assertTrue(self.service.verify_attestation("acme", attestation.id))

        with self.assertRaises(ValidationError):
            self.service.close_run("acme", "ops", run.id)

        for item in self.service.list_work_items("acme", run_id=run.id):
            if item.state == WorkItemState.OPEN:
                if item.evidence_required:
                    self.service.upload_evidence(
                        "acme", "alice", item.code.encode(), "text/plain",
                        {"source": "erp", "source_id": item.code, "title": item.title},
                        link_kind="CLOSE_TASK", link_ref_id=item.id,
                    )
                self.service.complete_work_item("acme", "alice", item.id)

        progress = self.service.run_progress("acme", run.id)
        self.assertEqual(progress.percent_complete, 100.0)

        closed = self.service.close_run("acme", "ops", run.id, lock_period=True)
        published = self.service.publish_run("acme", "ops", run.id)
        self.assertEqual(closed.status, RunStatus.CLOSED)
        self.assertEqual(published.status, RunStatus.PUBLISHED)

        for event_type in ("BINDER_BUILT", "ATTESTATION_SIGNED", "PERIOD_LOCKED", "RUN_PUBLISHED"):
            self.assertEqual(len(self.sink.of_type(event_type)), 1, event_type)

    def test_sla_tick_through_service(self) -> None:
        """Test ticking a started run after its cutoff."""
        run = self._start_january()

        result = self.service.tick_sla(
            "acme", "ops", run_id=run.id, now=datetime(2025, 2, 7, 12, tzinfo=UTC)
        )

        self.assertEqual(result.evaluated, 10)
        self.assertEqual(len(result.transitions), 10)
        self.assertEqual(len(self.sink.of_type("SLA_LATE")), 10)
        summary = self.service.sla_summary("acme", run.id)
        self.assertEqual(summary.counts[SlaSeverity.LATE.value], 10)

    def test_tick_all_sla(self) -> None:
        """Test ticking every tenant."""
        self._start_january()
        run = self.service.create_run("globex", "ops", period="2025-01", owner="hank")
        self.service.start_run("globex", "ops", run.id)

        results = self.service.tick_all_sla(now=datetime(2025, 2, 10, tzinfo=UTC))

        self.assertEqual(sorted(r.tenant_id for r in results), ["acme", "globex"])
        self.assertEqual(len(self.sink.of_type("SLA_ESCALATED")), 20)

    def test_sink_none_leaves_events_pending(self) -> None:
        """Test that without a sink events stay in the outbox."""
        self.service.sink = None

        self.service.lock_period("acme", "ops", "2025-01")

        self.assertEqual(self.service.dispatch_events(), 0)
        self.assertEqual(self.service.outbox.pending_count(), 1)

    def test_policy_upsert(self) -> None:
        """Test storing a tenant policy through the service."""
        policy = self.service.upsert_sla_policy(
            "acme", "ops", tz="Europe/Berlin", cutoff_day=3, grace_hours=4
        )
        self.assertEqual(self.service.get_sla_policy("acme").tz, policy.tz)

    def test_redaction_rule_in_manifest(self) -> None:
        """Test building a redacted manifest through the service."""
        for title, pii in (("Public", "NONE"), ("Payroll", "HIGH")):
            self.service.upload_evidence(
                "acme", "alice", title.encode(), "text/plain",
                {"source": "hr", "source_id": title, "title": title, "pii_level": pii},
                link_kind="CLOSE_TASK", link_ref_id="item-1",
            )
        self.service.upsert_redaction_rule("acme", "ops", "external", {"pii_level_max": "LOW"})

        manifest = self.service.build_manifest(
            "acme", "alice", "CLOSE_TASK", "item-1", {"redaction_rules": ["EXTERNAL"]}
        )

        self.assertEqual([line.title for line in manifest.lines], ["Public"])


if __name__ == "__main__":
    unittest.main()
