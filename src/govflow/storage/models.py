"""
Data models for the governed workflow engine.

This module defines the enums and dataclasses used to represent evidence,
manifests, binders, attestations, runs, work items and SLA policies as they
are stored in the database.

Schema Design Decisions:
    - IDs are UUIDs stored as strings for portability
    - Timestamps are stored as ISO format strings in UTC
    - Tag sets and JSON payloads are stored as TEXT (JSON) in SQLite
    - Hashes are SHA-256 hex strings for integrity verification
    - Every row carries its tenant_id; no query crosses tenants
"""

from __future__ import annotations

import json
import re
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from govflow.errors import ValidationError


# Tenant ids become directory names under objects/ and binders/
_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def check_tenant(tenant_id: str) -> str:
    """Validate a tenant id, returning it unchanged."""
    if not isinstance(tenant_id, str) or not _TENANT_ID_PATTERN.match(tenant_id):
        raise ValidationError(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


def require_text(value: str | None, name: str, tenant_id: str | None = None) -> str:
    """Return a stripped, non-empty string or raise ValidationError."""
    if value is None or not str(value).strip():
        raise ValidationError(f"{name} is required", tenant_id=tenant_id)
    return str(value).strip()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def new_id() -> str:
    """Generate a new entity identifier."""
    return str(uuid.uuid4())


def parse_ts(value: str | datetime | None) -> datetime | None:
    """Parse a stored timestamp, assuming UTC for naive values."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def format_ts(value: datetime | None) -> str | None:
    """Format a timestamp for storage."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    # Fixed width so stored timestamps sort lexically
    return value.astimezone(UTC).isoformat(timespec="microseconds")


# -----------------------------------------------------------------------------
# Enums
# -----------------------------------------------------------------------------


class RankedEnum(str, Enum):
    """String enum whose declaration order is its authority/severity order."""

    @property
    def rank(self) -> int:
        return list(type(self)).index(self)

    @classmethod
    def parse(cls, value: Any) -> Any:
        """Parse a value into a member, raising ValidationError if unknown."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(
                f"Invalid {cls.__name__} '{value}'. Must be one of: {allowed}"
            ) from None


class PiiLevel(RankedEnum):
    """PII sensitivity of an evidence record, ordered NONE < LOW < MEDIUM < HIGH."""

    NONE = "NONE"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


class Role(RankedEnum):
    """Approval and signing authority, ordered lowest to highest."""

    MANAGER = "MANAGER"
    CONTROLLER = "CONTROLLER"
    AUDITOR = "AUDITOR"
    CFO = "CFO"


class SlaSeverity(RankedEnum):
    """Escalation tier derived by the SLA clock."""

    OK = "OK"
    DUE_SOON = "DUE_SOON"
    LATE = "LATE"
    ESCALATED = "ESCALATED"


class WorkItemState(str, Enum):
    """Lifecycle states shared by every work item kind."""

    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    SUBMITTED = "SUBMITTED"
    RETURNED = "RETURNED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    DONE = "DONE"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkItemState.APPROVED, WorkItemState.REJECTED, WorkItemState.DONE)

    @property
    def is_clocked(self) -> bool:
        """Whether the SLA clock evaluates items in this state."""
        return self in (WorkItemState.OPEN, WorkItemState.IN_PROGRESS)


class WorkItemKind(str, Enum):
    """Work item variants; all share one state machine."""

    CLOSE_TASK = "CLOSE_TASK"
    ATTEST_TASK = "ATTEST_TASK"
    CTRL_RUN = "CTRL_RUN"
    TEST_PLAN = "TEST_PLAN"


class RunStatus(str, Enum):
    """Aggregate status of a run."""

    DRAFT = "DRAFT"
    IN_PROGRESS = "IN_PROGRESS"
    CLOSED = "CLOSED"
    PUBLISHED = "PUBLISHED"


class BinderFormat(str, Enum):
    """Supported binder archive formats."""

    ZIP = "ZIP"
    TAR = "TAR"

    @property
    def extension(self) -> str:
        return "zip" if self == BinderFormat.ZIP else "tar"


# -----------------------------------------------------------------------------
# Evidence
# -----------------------------------------------------------------------------


@dataclass
class EvidenceObject:
    """
    Immutable, content-addressed blob.

    Database Table: evd_object
        - UNIQUE(tenant_id, sha256): identical bytes resolve to one object
    """

    id: str
    tenant_id: str
    sha256: str
    size_bytes: int
    mime: str
    storage_uri: str
    uploaded_by: str
    uploaded_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> EvidenceObject:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            sha256=row["sha256"],
            size_bytes=row["size_bytes"],
            mime=row["mime"],
            storage_uri=row["storage_uri"],
            uploaded_by=row["uploaded_by"],
            uploaded_at=parse_ts(row["uploaded_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
            "mime": self.mime,
            "storage_uri": self.storage_uri,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": format_ts(self.uploaded_at),
        }


@dataclass
class EvidenceRecord:
    """
    Logical evidence record over one object.

    Many records may point at the same object for different business
    contexts. Title, note, tags and PII level may be edited later; sealed
    manifests keep their own snapshot.
    """

    id: str
    tenant_id: str
    object_id: str
    source: str
    source_id: str
    title: str
    created_by: str
    created_at: datetime
    note: str | None = None
    tags: list[str] = field(default_factory=list)
    pii_level: PiiLevel = PiiLevel.NONE

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> EvidenceRecord:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            object_id=row["object_id"],
            source=row["source"],
            source_id=row["source_id"],
            title=row["title"],
            note=row["note"],
            tags=json.loads(row["tags_json"]) if row["tags_json"] else [],
            pii_level=PiiLevel(row["pii_level"]),
            created_by=row["created_by"],
            created_at=parse_ts(row["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "object_id": self.object_id,
            "source": self.source,
            "source_id": self.source_id,
            "title": self.title,
            "note": self.note,
            "tags": list(self.tags),
            "pii_level": self.pii_level.value,
            "created_by": self.created_by,
            "created_at": format_ts(self.created_at),
        }


@dataclass
class EvidenceLink:
    """Association between a record and a work-item-shaped reference (kind + id)."""

    id: str
    tenant_id: str
    record_id: str
    kind: str
    ref_id: str
    added_by: str
    added_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> EvidenceLink:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            record_id=row["record_id"],
            kind=row["kind"],
            ref_id=row["ref_id"],
            added_by=row["added_by"],
            added_at=parse_ts(row["added_at"]),
        )

    @property
    def ref(self) -> str:
        return f"{self.kind}:{self.ref_id}"


@dataclass
class ManifestFilters:
    """
    Selection and redaction criteria for a manifest build.

    Attributes:
        pii_level_max: Records above this PII level are excluded.
        exclude_tags: Records carrying any of these tags are excluded.
        exclude_sources: Records from these source types are excluded.
        redaction_rules: Codes of catalog rules merged into the filters.
    """

    pii_level_max: PiiLevel | None = None
    exclude_tags: list[str] = field(default_factory=list)
    exclude_sources: list[str] = field(default_factory=list)
    redaction_rules: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        # Record sources are stored upper-cased
        self.exclude_sources = [s.upper() for s in self.exclude_sources]

    def to_dict(self) -> dict[str, Any]:
        return {
            "pii_level_max": self.pii_level_max.value if self.pii_level_max else None,
            "exclude_tags": sorted(set(self.exclude_tags)),
            "exclude_sources": sorted(set(self.exclude_sources)),
            "redaction_rules": sorted(set(self.redaction_rules)),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ManifestFilters:
        data = data or {}
        if not isinstance(data, dict):
            raise ValidationError("Manifest filters must be a mapping")
        pii = data.get("pii_level_max")
        for key in ("exclude_tags", "exclude_sources", "redaction_rules"):
            value = data.get(key, [])
            if not isinstance(value, (list, tuple, set)) or not all(
                isinstance(v, str) for v in value
            ):
                raise ValidationError(f"Manifest filter '{key}' must be a list of strings")
        return cls(
            pii_level_max=PiiLevel.parse(pii) if pii else None,
            exclude_tags=list(data.get("exclude_tags", [])),
            exclude_sources=[s.upper() for s in data.get("exclude_sources", [])],
            redaction_rules=list(data.get("redaction_rules", [])),
        )

    def admits(self, record: EvidenceRecord) -> bool:
        """Whether a record passes these filters."""
        if self.pii_level_max is not None and record.pii_level.rank > self.pii_level_max.rank:
            return False
        if self.exclude_tags and set(record.tags) & set(self.exclude_tags):
            return False
        if self.exclude_sources and record.source.upper() in set(self.exclude_sources):
            return False
        return True


@dataclass
class RedactionRule:
    """Named, reusable filter stored in a tenant's redaction catalog."""

    id: str
    tenant_id: str
    code: str
    rule: ManifestFilters
    enabled: bool
    updated_by: str
    updated_at: datetime
    description: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> RedactionRule:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            code=row["code"],
            description=row["description"],
            rule=ManifestFilters.from_dict(json.loads(row["rule_json"])),
            enabled=bool(row["enabled"]),
            updated_by=row["updated_by"],
            updated_at=parse_ts(row["updated_at"]),
        )


@dataclass
class ManifestLine:
    """Frozen snapshot of one record inside a manifest."""

    manifest_id: str
    position: int
    record_id: str
    object_sha256: str
    object_bytes: int
    title: str
    tags: list[str] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> ManifestLine:
        return cls(
            manifest_id=row["manifest_id"],
            position=row["position"],
            record_id=row["record_id"],
            object_sha256=row["object_sha256"],
            object_bytes=row["object_bytes"],
            title=row["title"],
            tags=json.loads(row["tags_json"]) if row["tags_json"] else [],
        )

    def checksum_entry(self) -> dict[str, Any]:
        """The fields covered by the manifest checksum."""
        return {
            "record_id": self.record_id,
            "object_sha256": self.object_sha256,
            "object_bytes": self.object_bytes,
            "title": self.title,
            "tags": sorted(self.tags),
        }


@dataclass
class Manifest:
    """Immutable, checksummed selection of evidence records for a scope."""

    id: str
    tenant_id: str
    scope_kind: str
    scope_id: str
    filters: dict[str, Any]
    object_count: int
    total_bytes: int
    sha256: str
    created_by: str
    created_at: datetime
    lines: list[ManifestLine] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Manifest:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            scope_kind=row["scope_kind"],
            scope_id=row["scope_id"],
            filters=json.loads(row["filters_json"]),
            object_count=row["object_count"],
            total_bytes=row["total_bytes"],
            sha256=row["sha256"],
            created_by=row["created_by"],
            created_at=parse_ts(row["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "scope_kind": self.scope_kind,
            "scope_id": self.scope_id,
            "filters": self.filters,
            "object_count": self.object_count,
            "total_bytes": self.total_bytes,
            "sha256": self.sha256,
            "created_by": self.created_by,
            "created_at": format_ts(self.created_at),
        }


@dataclass
class Binder:
    """Packaged archive built from exactly one manifest."""

    id: str
    tenant_id: str
    manifest_id: str
    scope_kind: str
    scope_id: str
    format: BinderFormat
    storage_uri: str
    size_bytes: int
    sha256: str
    built_by: str
    built_at: datetime
    idempotency_key: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Binder:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            manifest_id=row["manifest_id"],
            scope_kind=row["scope_kind"],
            scope_id=row["scope_id"],
            format=BinderFormat(row["format"]),
            storage_uri=row["storage_uri"],
            size_bytes=row["size_bytes"],
            sha256=row["sha256"],
            built_by=row["built_by"],
            built_at=parse_ts(row["built_at"]),
            idempotency_key=row["idempotency_key"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "manifest_id": self.manifest_id,
            "scope_kind": self.scope_kind,
            "scope_id": self.scope_id,
            "format": self.format.value,
            "storage_uri": self.storage_uri,
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
            "built_by": self.built_by,
            "built_at": format_ts(self.built_at),
        }


@dataclass
class Attestation:
    """Signed statement over one binder."""

    id: str
    tenant_id: str
    binder_id: str
    signer_id: str
    signer_role: Role
    payload: dict[str, Any]
    sha256: str
    signed_at: datetime
    signature: str | None = None
    key_fingerprint: str | None = None
    idempotency_key: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Attestation:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            binder_id=row["binder_id"],
            signer_id=row["signer_id"],
            signer_role=Role(row["signer_role"]),
            payload=json.loads(row["payload_json"]),
            sha256=row["sha256"],
            signed_at=parse_ts(row["signed_at"]),
            signature=row["signature"],
            key_fingerprint=row["key_fingerprint"],
            idempotency_key=row["idempotency_key"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "binder_id": self.binder_id,
            "signer_id": self.signer_id,
            "signer_role": self.signer_role.value,
            "payload": self.payload,
            "sha256": self.sha256,
            "signature": self.signature,
            "key_fingerprint": self.key_fingerprint,
            "signed_at": format_ts(self.signed_at),
        }


# -----------------------------------------------------------------------------
# Workflow
# -----------------------------------------------------------------------------


@dataclass
class Run:
    """A batch of work items for one compliance period."""

    id: str
    tenant_id: str
    period: str
    status: RunStatus
    owner: str
    created_by: str
    created_at: datetime
    notes: str | None = None
    started_at: datetime | None = None
    closed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Run:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            period=row["period"],
            status=RunStatus(row["status"]),
            owner=row["owner"],
            notes=row["notes"],
            started_at=parse_ts(row["started_at"]),
            closed_at=parse_ts(row["closed_at"]),
            created_by=row["created_by"],
            created_at=parse_ts(row["created_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "period": self.period,
            "status": self.status.value,
            "owner": self.owner,
            "notes": self.notes,
            "started_at": format_ts(self.started_at),
            "closed_at": format_ts(self.closed_at),
            "created_by": self.created_by,
            "created_at": format_ts(self.created_at),
        }


@dataclass
class PeriodLock:
    """Administrative lock on a tenant's period."""

    tenant_id: str
    period: str
    locked_by: str
    locked_at: datetime

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> PeriodLock:
        return cls(
            tenant_id=row["tenant_id"],
            period=row["period"],
            locked_by=row["locked_by"],
            locked_at=parse_ts(row["locked_at"]),
        )


@dataclass
class WorkItem:
    """
    A single trackable task, control run, test plan or attestation task.

    Kind-specific data lives in payload; the lifecycle is identical for
    every kind. parent_id is a plain id, resolved through the lifecycle
    manager when needed.
    """

    id: str
    tenant_id: str
    kind: WorkItemKind
    code: str
    title: str
    owner: str
    state: WorkItemState
    sla_severity: SlaSeverity
    created_at: datetime
    updated_at: datetime
    run_id: str | None = None
    approver: str | None = None
    required_role: Role = Role.MANAGER
    due_at: datetime | None = None
    sla_changed_at: datetime | None = None
    aging_days: int = 0
    evidence_required: bool = False
    payload: dict[str, Any] = field(default_factory=dict)
    return_reason: str | None = None
    parent_id: str | None = None
    submitted_at: datetime | None = None
    approved_at: datetime | None = None

    @property
    def evidence_ref(self) -> tuple[str, str]:
        """The (kind, ref_id) pair evidence links use for this item."""
        return self.kind.value, self.id

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> WorkItem:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            run_id=row["run_id"],
            kind=WorkItemKind(row["kind"]),
            code=row["code"],
            title=row["title"],
            owner=row["owner"],
            approver=row["approver"],
            required_role=Role(row["required_role"]),
            due_at=parse_ts(row["due_at"]),
            state=WorkItemState(row["state"]),
            sla_severity=SlaSeverity(row["sla_severity"]),
            sla_changed_at=parse_ts(row["sla_changed_at"]),
            aging_days=row["aging_days"],
            evidence_required=bool(row["evidence_required"]),
            payload=json.loads(row["payload_json"]) if row["payload_json"] else {},
            return_reason=row["return_reason"],
            parent_id=row["parent_id"],
            submitted_at=parse_ts(row["submitted_at"]),
            approved_at=parse_ts(row["approved_at"]),
            created_at=parse_ts(row["created_at"]),
            updated_at=parse_ts(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "run_id": self.run_id,
            "kind": self.kind.value,
            "code": self.code,
            "title": self.title,
            "owner": self.owner,
            "approver": self.approver,
            "required_role": self.required_role.value,
            "due_at": format_ts(self.due_at),
            "state": self.state.value,
            "sla_severity": self.sla_severity.value,
            "aging_days": self.aging_days,
            "evidence_required": self.evidence_required,
            "return_reason": self.return_reason,
            "parent_id": self.parent_id,
            "submitted_at": format_ts(self.submitted_at),
            "approved_at": format_ts(self.approved_at),
        }


@dataclass(frozen=True)
class SlaPolicy:
    """
    Per-tenant SLA thresholds.

    Frozen: the clock reads a policy once per tick and passes it by value.
    Thresholds are hours past the due date.
    """

    tenant_id: str
    code: str = "MONTH_END"
    tz: str = "UTC"
    cutoff_day: int = 5
    grace_hours: int = 0
    escal1_hours: int = 24
    escal2_hours: int = 48
    escal_to_lvl1: str | None = None
    escal_to_lvl2: str | None = None
    updated_by: str | None = None
    updated_at: datetime | None = None

    def validate(self) -> None:
        """Raise ValidationError unless 0 <= grace <= escal1 <= escal2."""
        if not 0 <= self.grace_hours <= self.escal1_hours <= self.escal2_hours:
            raise ValidationError(
                "SLA thresholds must satisfy 0 <= grace_hours <= escal1_hours <= escal2_hours",
                tenant_id=self.tenant_id,
            )
        if not 1 <= self.cutoff_day <= 28:
            raise ValidationError("cutoff_day must be between 1 and 28", tenant_id=self.tenant_id)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> SlaPolicy:
        return cls(
            tenant_id=row["tenant_id"],
            code=row["code"],
            tz=row["tz"],
            cutoff_day=row["cutoff_day"],
            grace_hours=row["grace_hours"],
            escal1_hours=row["escal1_hours"],
            escal2_hours=row["escal2_hours"],
            escal_to_lvl1=row["escal_to_lvl1"],
            escal_to_lvl2=row["escal_to_lvl2"],
            updated_by=row["updated_by"],
            updated_at=parse_ts(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "code": self.code,
            "tz": self.tz,
            "cutoff_day": self.cutoff_day,
            "grace_hours": self.grace_hours,
            "escal1_hours": self.escal1_hours,
            "escal2_hours": self.escal2_hours,
            "escal_to_lvl1": self.escal_to_lvl1,
            "escal_to_lvl2": self.escal_to_lvl2,
            "updated_by": self.updated_by,
            "updated_at": format_ts(self.updated_at),
        }
