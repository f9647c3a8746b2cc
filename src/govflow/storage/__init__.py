"""
Persistence layer for govflow.

SQLite holds every entity row; evidence blobs live on disk under a
content-addressed layout.

Storage Structure:
    data/
        govflow.db                          # SQLite database
        objects/
            {tenant_id}/{sha[:2]}/{sha256}  # Evidence blobs
        binders/
            {tenant_id}/{binder_id}.{zip|tar}

Usage:
    from govflow.storage import Database, EvidenceStore

    db = Database(data_dir)
    store = EvidenceStore(db)
    obj = store.put("acme", content, "application/pdf", "alice")
"""

from govflow.storage.database import Database
from govflow.storage.evidence_store import EvidenceStore
from govflow.storage.models import (
    Attestation,
    Binder,
    BinderFormat,
    EvidenceLink,
    EvidenceObject,
    EvidenceRecord,
    Manifest,
    ManifestFilters,
    ManifestLine,
    PeriodLock,
    PiiLevel,
    RedactionRule,
    Role,
    Run,
    RunStatus,
    SlaPolicy,
    SlaSeverity,
    WorkItem,
    WorkItemKind,
    WorkItemState,
)

__all__ = [
    # Stores
    "Database",
    "EvidenceStore",
    # Evidence models
    "EvidenceObject",
    "EvidenceRecord",
    "EvidenceLink",
    "RedactionRule",
    "ManifestFilters",
    "Manifest",
    "ManifestLine",
    "Binder",
    "Attestation",
    # Workflow models
    "Run",
    "PeriodLock",
    "WorkItem",
    "SlaPolicy",
    # Enums
    "PiiLevel",
    "Role",
    "SlaSeverity",
    "WorkItemState",
    "WorkItemKind",
    "RunStatus",
    "BinderFormat",
]
