"""
Governance service facade.

The single inbound surface of govflow. Every operation takes the tenant id
and the acting identity supplied by the (external) authentication layer,
delegates to the component that owns the behavior, and then hands pending
outbox events to the configured sink.

Usage:
    from govflow.config import load_config
    from govflow.service import GovernanceService

    service = GovernanceService.from_settings(load_config())
    run = service.create_run("acme", "ops", period="2025-01", owner="alice")
    service.start_run("acme", "ops", run.id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from govflow.config.settings import Settings
from govflow.errors import StorageIOError, ValidationError
from govflow.events.outbox import EventOutbox
from govflow.events.sinks import EventSink, create_sink
from govflow.evidence.attestation import AttestationSigner
from govflow.evidence.binder import BinderPackager, parse_format
from govflow.evidence.manifest import ManifestBuilder
from govflow.evidence.redaction import RedactionCatalog
from govflow.evidence.registry import EvidenceRegistry
from govflow.storage.database import Database
from govflow.storage.evidence_store import EvidenceStore
from govflow.storage.models import (
    Attestation,
    Binder,
    EvidenceLink,
    EvidenceObject,
    EvidenceRecord,
    Manifest,
    ManifestFilters,
    PeriodLock,
    RedactionRule,
    Role,
    Run,
    SlaPolicy,
    WorkItem,
    WorkItemKind,
    WorkItemState,
    utcnow,
)
from govflow.workflow.lifecycle import LifecycleManager
from govflow.workflow.orchestrator import RunOrchestrator, RunProgress, month_period
from govflow.workflow.sla import SlaClock, SlaSummary, TickResult

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    """Outcome of upload_evidence."""

    object: EvidenceObject
    record: EvidenceRecord
    link: EvidenceLink | None
    deduplicated: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "object": self.object.to_dict(),
            "record": self.record.to_dict(),
            "link": self.link.ref if self.link else None,
            "deduplicated": self.deduplicated,
        }


class GovernanceService:
    """
    Facade over the evidence and workflow components.

    Attributes:
        db: Shared database.
        store: Evidence object store.
        registry: Evidence records and links.
        catalog: Redaction rule catalog.
        manifests: Manifest builder.
        binders: Binder packager.
        attestations: Attestation signer.
        lifecycle: Work-item lifecycle manager.
        clock: SLA clock.
        orchestrator: Run orchestrator.
        outbox: Event outbox.
        sink: Event sink, or None to leave events in the outbox.
    """

    def __init__(
        self,
        db: Database,
        store: EvidenceStore,
        clock: SlaClock,
        attestations: AttestationSigner,
        sink: EventSink | None = None,
        binder_format: str = "ZIP",
    ) -> None:
        self.db = db
        self.store = store
        self.registry = EvidenceRegistry(db, store)
        self.catalog = RedactionCatalog(db)
        self.manifests = ManifestBuilder(db, self.catalog)
        self.binders = BinderPackager(db, store, self.manifests, parse_format(binder_format))
        self.attestations = attestations
        self.lifecycle = LifecycleManager(db, self.registry)
        self.clock = clock
        self.orchestrator = RunOrchestrator(db, self.lifecycle, clock)
        self.outbox = EventOutbox(db)
        self.sink = sink

    @classmethod
    def from_settings(cls, settings: Settings) -> GovernanceService:
        """
        Build a service from configuration.

        Raises:
            ConfigurationError: If the signing key cannot be loaded.
            StorageIOError: If the data directory cannot be prepared.
        """
        data_dir = Path(settings.data_dir).expanduser()
        db = Database(data_dir, timeout=settings.storage.io_timeout_seconds)
        store = EvidenceStore(db, chunk_size=settings.storage.chunk_size)

        default_policy = None
        if settings.sla.enabled:
            default_policy = SlaPolicy(
                tenant_id="*",
                code=settings.sla.policy_code,
                tz=settings.sla.tz,
                cutoff_day=settings.sla.cutoff_day,
                grace_hours=settings.sla.grace_hours,
                escal1_hours=settings.sla.escal1_hours,
                escal2_hours=settings.sla.escal2_hours,
            )
        clock = SlaClock(db, default_policy=default_policy, max_workers=settings.scheduler.max_workers)
        attestations = AttestationSigner(db, settings.attestation.signing_key_path or None)

        return cls(
            db,
            store,
            clock,
            attestations,
            sink=create_sink(settings.events),
            binder_format=settings.evidence.binder_format,
        )

    def close(self) -> None:
        if self.sink is not None:
            self.sink.close()

    def dispatch_events(self) -> int:
        """Deliver pending events to the sink; failures leave them pending."""
        if self.sink is None:
            return 0
        try:
            return self.outbox.dispatch(self.sink)
        except StorageIOError as e:
            logger.warning(f"Event dispatch skipped: {e}")
            return 0

    # -------------------------------------------------------------------------
    # Work items
    # -------------------------------------------------------------------------

    def create_work_item(
        self,
        tenant_id: str,
        actor_id: str,
        kind: WorkItemKind | str,
        code: str,
        title: str,
        owner: str,
        **options: Any,
    ) -> WorkItem:
        item = self.lifecycle.create_item(tenant_id, kind, code, title, owner, actor_id, **options)
        self.dispatch_events()
        return item

    def start_work_item(self, tenant_id: str, actor_id: str, item_id: str) -> WorkItem:
        item = self.lifecycle.start(tenant_id, item_id, actor_id)
        self.dispatch_events()
        return item

    def submit_work_item(
        self,
        tenant_id: str,
        actor_id: str,
        item_id: str,
        payload: dict[str, Any] | None = None,
        evidence_record_ids: list[str] | tuple[str, ...] = (),
    ) -> WorkItem:
        item = self.lifecycle.submit(tenant_id, item_id, actor_id, payload, evidence_record_ids)
        self.dispatch_events()
        return item

    def return_work_item(
        self, tenant_id: str, actor_id: str, item_id: str, reason: str
    ) -> WorkItem:
        item = self.lifecycle.return_item(tenant_id, item_id, actor_id, reason)
        self.dispatch_events()
        return item

    def approve_work_item(
        self, tenant_id: str, actor_id: str, item_id: str, actor_role: Role | str
    ) -> WorkItem:
        item = self.lifecycle.approve(tenant_id, item_id, actor_id, actor_role)
        self.dispatch_events()
        return item

    def reject_work_item(
        self,
        tenant_id: str,
        actor_id: str,
        item_id: str,
        actor_role: Role | str,
        reason: str,
    ) -> WorkItem:
        item = self.lifecycle.reject(tenant_id, item_id, actor_id, actor_role, reason)
        self.dispatch_events()
        return item

    def complete_work_item(self, tenant_id: str, actor_id: str, item_id: str) -> WorkItem:
        item = self.lifecycle.complete(tenant_id, item_id, actor_id)
        self.dispatch_events()
        return item

    def get_work_item(self, tenant_id: str, item_id: str) -> WorkItem:
        return self.lifecycle.get_item(tenant_id, item_id)

    def list_work_items(
        self,
        tenant_id: str,
        run_id: str | None = None,
        states: list[WorkItemState] | None = None,
    ) -> list[WorkItem]:
        return self.lifecycle.list_items(tenant_id, run_id=run_id, states=states)

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def create_run(
        self,
        tenant_id: str,
        actor_id: str,
        period: str | None = None,
        year: int | None = None,
        month: int | None = None,
        owner: str | None = None,
        notes: str | None = None,
    ) -> Run:
        """
        Create a run for a period, given directly or as year + month.

        Raises:
            LockedError: If the period is locked.
            ConflictError: If a run already exists for the period.
        """
        if period is None:
            if year is None or month is None:
                raise ValidationError("Either period or year and month are required")
            period = month_period(year, month)
        run = self.orchestrator.create_run(tenant_id, period, owner or actor_id, actor_id, notes)
        self.dispatch_events()
        return run

    def start_run(
        self,
        tenant_id: str,
        actor_id: str,
        run_id: str,
        assignments: dict[str, Any] | None = None,
        extra_items: list[Any] | tuple[Any, ...] = (),
    ) -> Run:
        run = self.orchestrator.start_run(
            tenant_id, run_id, actor_id, assignments=assignments, extra_items=extra_items
        )
        self.dispatch_events()
        return run

    def close_run(
        self, tenant_id: str, actor_id: str, run_id: str, lock_period: bool = False
    ) -> Run:
        run = self.orchestrator.close_run(tenant_id, run_id, actor_id, lock_period=lock_period)
        self.dispatch_events()
        return run

    def publish_run(self, tenant_id: str, actor_id: str, run_id: str) -> Run:
        run = self.orchestrator.publish_run(tenant_id, run_id, actor_id)
        self.dispatch_events()
        return run

    def lock_period(self, tenant_id: str, actor_id: str, period: str) -> PeriodLock:
        lock = self.orchestrator.lock_period(tenant_id, period, actor_id)
        self.dispatch_events()
        return lock

    def unlock_period(self, tenant_id: str, actor_id: str, period: str) -> bool:
        removed = self.orchestrator.unlock_period(tenant_id, period, actor_id)
        self.dispatch_events()
        return removed

    def get_run(self, tenant_id: str, run_id: str) -> Run:
        return self.orchestrator.get_run(tenant_id, run_id)

    def find_run(self, tenant_id: str, period: str) -> Run | None:
        return self.orchestrator.find_run(tenant_id, period)

    def list_runs(self, tenant_id: str) -> list[Run]:
        return self.orchestrator.list_runs(tenant_id)

    def run_progress(self, tenant_id: str, run_id: str) -> RunProgress:
        return self.orchestrator.run_progress(tenant_id, run_id)

    # -------------------------------------------------------------------------
    # Evidence
    # -------------------------------------------------------------------------

    def upload_evidence(
        self,
        tenant_id: str,
        actor_id: str,
        content: bytes | Path,
        mime: str,
        metadata: dict[str, Any],
        declared_sha256: str | None = None,
        link_kind: str | None = None,
        link_ref_id: str | None = None,
    ) -> UploadResult:
        """
        Store content, create a record over it and optionally link it.

        Args:
            content: Raw bytes, or a path to a local file to stream.
            metadata: Record metadata (source, source_id, title, note, tags,
                pii_level).
            declared_sha256: Hash the caller claims the content has.
            link_kind: Reference kind to link the record to (e.g. CLOSE_TASK).
            link_ref_id: Reference id to link the record to.

        Raises:
            IntegrityError: If declared_sha256 does not match the content.
        """
        started = utcnow()
        if isinstance(content, Path):
            obj = self.store.put_file(tenant_id, content, mime, actor_id, declared_sha256)
        else:
            obj = self.store.put(tenant_id, content, mime, actor_id, declared_sha256)
        record = self.registry.create_record(tenant_id, obj.id, metadata, actor_id)

        link = None
        if link_kind and link_ref_id:
            link = self.registry.link(tenant_id, record.id, link_kind, link_ref_id, actor_id)

        self.dispatch_events()
        return UploadResult(
            object=obj,
            record=record,
            link=link,
            deduplicated=obj.uploaded_at < started,
        )

    def link_evidence(
        self, tenant_id: str, actor_id: str, record_id: str, kind: str, ref_id: str
    ) -> EvidenceLink:
        link = self.registry.link(tenant_id, record_id, kind, ref_id, actor_id)
        self.dispatch_events()
        return link

    def query_evidence(self, tenant_id: str, kind: str, ref_id: str) -> list[EvidenceRecord]:
        return self.registry.query_by_ref(tenant_id, kind, ref_id)

    def upsert_redaction_rule(
        self,
        tenant_id: str,
        actor_id: str,
        code: str,
        rule: ManifestFilters | dict[str, Any],
        description: str | None = None,
        enabled: bool = True,
    ) -> RedactionRule:
        return self.catalog.upsert_rule(
            tenant_id, code, rule, actor_id, description=description, enabled=enabled
        )

    def build_manifest(
        self,
        tenant_id: str,
        actor_id: str,
        scope_kind: str,
        scope_id: str,
        filters: ManifestFilters | dict[str, Any] | None = None,
    ) -> Manifest:
        manifest = self.manifests.build(tenant_id, scope_kind, scope_id, filters, actor_id)
        self.dispatch_events()
        return manifest

    def build_binder(
        self,
        tenant_id: str,
        actor_id: str,
        manifest_id: str,
        fmt: str | None = None,
        idempotency_key: str | None = None,
    ) -> Binder:
        binder = self.binders.build(tenant_id, manifest_id, fmt, actor_id, idempotency_key)
        self.dispatch_events()
        return binder

    def sign_attestation(
        self,
        tenant_id: str,
        actor_id: str,
        binder_id: str,
        signer_role: Role | str,
        statement: str,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Attestation:
        """The acting identity is the signer."""
        attestation = self.attestations.sign(
            tenant_id,
            binder_id,
            actor_id,
            signer_role,
            statement,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        self.dispatch_events()
        return attestation

    def verify_manifest(self, tenant_id: str, manifest_id: str) -> bool:
        return self.manifests.verify(tenant_id, manifest_id)

    def verify_binder(self, tenant_id: str, binder_id: str) -> bool:
        return self.binders.verify(tenant_id, binder_id)

    def verify_attestation(self, tenant_id: str, attestation_id: str) -> bool:
        return self.attestations.verify(tenant_id, attestation_id)

    # -------------------------------------------------------------------------
    # SLA
    # -------------------------------------------------------------------------

    def tick_sla(
        self,
        tenant_id: str,
        actor_id: str,
        run_id: str | None = None,
        now: datetime | None = None,
    ) -> TickResult:
        logger.debug(f"SLA tick for tenant {tenant_id} requested by {actor_id}")
        result = self.clock.tick(tenant_id, now=now, run_id=run_id)
        self.dispatch_events()
        return result

    def tick_all_sla(self, now: datetime | None = None) -> list[TickResult]:
        results = self.clock.tick_all(now=now)
        self.dispatch_events()
        return results

    def upsert_sla_policy(self, tenant_id: str, actor_id: str, **policy: Any) -> SlaPolicy:
        return self.clock.upsert_policy(tenant_id, actor_id, **policy)

    def get_sla_policy(self, tenant_id: str) -> SlaPolicy | None:
        return self.clock.effective_policy(tenant_id)

    def sla_summary(self, tenant_id: str, run_id: str | None = None) -> SlaSummary:
        return self.clock.summarize(tenant_id, run_id)

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def statistics(self, tenant_id: str | None = None) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "data_dir": str(self.db.data_dir),
            "tables": self.db.statistics(),
            "signing_enabled": self.attestations.signing_enabled,
            "sink": type(self.sink).__name__ if self.sink else None,
        }
        if tenant_id is not None:
            stats["objects"] = self.store.statistics(tenant_id)
        return stats
