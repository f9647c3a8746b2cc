"""
Manifest builder.

A manifest freezes the evidence linked to a scope (a work item, a run, a
control) at a point in time: the filtered, redaction-applied list of
records with the hash and size of each record's object. Lines are a
snapshot, not a join, so later record edits never change a sealed
manifest.

Checksum:
    SHA-256 over the canonical JSON of the ordered list of
    {record_id, object_sha256, object_bytes, title, tags} (tags sorted).
    An empty manifest hashes the two bytes "[]".
"""

from __future__ import annotations

import json
import logging
from typing import Any

from govflow.errors import NotFoundError
from govflow.events.models import Event, EventType
from govflow.events.outbox import EventOutbox
from govflow.evidence.hashing import canonical_sha256
from govflow.evidence.redaction import RedactionCatalog
from govflow.storage.database import Database
from govflow.storage.models import (
    EvidenceRecord,
    Manifest,
    ManifestFilters,
    ManifestLine,
    check_tenant,
    format_ts,
    new_id,
    require_text,
    utcnow,
)

logger = logging.getLogger(__name__)


def compute_checksum(lines: list[ManifestLine]) -> str:
    """Checksum of an ordered line snapshot."""
    return canonical_sha256([line.checksum_entry() for line in lines])


def manifest_document(manifest: Manifest) -> dict[str, Any]:
    """
    The manifest as written into binders.

    Contains no build timestamps, so two binders of one manifest carry an
    identical manifest.json.
    """
    return {
        "manifest_id": manifest.id,
        "tenant_id": manifest.tenant_id,
        "scope_kind": manifest.scope_kind,
        "scope_id": manifest.scope_id,
        "filters": manifest.filters,
        "object_count": manifest.object_count,
        "total_bytes": manifest.total_bytes,
        "sha256": manifest.sha256,
        "lines": [
            {"position": line.position, **line.checksum_entry()} for line in manifest.lines
        ],
    }


class ManifestBuilder:
    """
    Builds and verifies manifests.

    Example:
        builder = ManifestBuilder(db, catalog)
        manifest = builder.build(
            "acme",
            "CLOSE_TASK",
            task_id,
            ManifestFilters(pii_level_max=PiiLevel.LOW, redaction_rules=["EXTERNAL"]),
            created_by="alice",
        )
        assert builder.verify("acme", manifest.id)
    """

    def __init__(self, db: Database, catalog: RedactionCatalog) -> None:
        self.db = db
        self.catalog = catalog

    def build(
        self,
        tenant_id: str,
        scope_kind: str,
        scope_id: str,
        filters: ManifestFilters | dict[str, Any] | None,
        created_by: str,
    ) -> Manifest:
        """
        Freeze the evidence linked to a scope into a manifest.

        Raises:
            ValidationError: If the filters are malformed or name an unknown
                or disabled redaction rule.
        """
        check_tenant(tenant_id)
        scope_kind = require_text(scope_kind, "scope_kind", tenant_id).upper()
        scope_id = require_text(scope_id, "scope_id", tenant_id)
        created_by = require_text(created_by, "created_by", tenant_id)
        if not isinstance(filters, ManifestFilters):
            filters = ManifestFilters.from_dict(filters)

        resolved = self.catalog.resolve_filters(tenant_id, filters)
        manifest_id = new_id()

        with self.db.transaction() as conn:
            rows = conn.execute(
                """
                SELECT r.*, o.sha256 AS object_sha256, o.size_bytes AS object_bytes
                FROM evd_link l
                JOIN evd_record r ON r.id = l.record_id AND r.tenant_id = l.tenant_id
                JOIN evd_object o ON o.id = r.object_id AND o.tenant_id = r.tenant_id
                WHERE l.tenant_id = ? AND l.kind = ? AND l.ref_id = ?
                ORDER BY r.created_at, r.id
                """,
                (tenant_id, scope_kind, scope_id),
            ).fetchall()

            lines: list[ManifestLine] = []
            for row in rows:
                record = EvidenceRecord.from_row(row)
                if not resolved.admits(record):
                    continue
                lines.append(
                    ManifestLine(
                        manifest_id=manifest_id,
                        position=len(lines),
                        record_id=record.id,
                        object_sha256=row["object_sha256"],
                        object_bytes=row["object_bytes"],
                        title=record.title,
                        tags=sorted(record.tags),
                    )
                )

            manifest = Manifest(
                id=manifest_id,
                tenant_id=tenant_id,
                scope_kind=scope_kind,
                scope_id=scope_id,
                filters=resolved.to_dict(),
                object_count=len(lines),
                total_bytes=sum(line.object_bytes for line in lines),
                sha256=compute_checksum(lines),
                created_by=created_by,
                created_at=utcnow(),
                lines=lines,
            )

            conn.execute(
                """
                INSERT INTO evd_manifest (
                    id, tenant_id, scope_kind, scope_id, filters_json,
                    object_count, total_bytes, sha256, created_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    manifest.id,
                    manifest.tenant_id,
                    manifest.scope_kind,
                    manifest.scope_id,
                    json.dumps(manifest.filters, sort_keys=True),
                    manifest.object_count,
                    manifest.total_bytes,
                    manifest.sha256,
                    manifest.created_by,
                    format_ts(manifest.created_at),
                ),
            )
            conn.executemany(
                """
                INSERT INTO evd_manifest_line (
                    manifest_id, position, record_id, object_sha256,
                    object_bytes, title, tags_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        line.manifest_id,
                        line.position,
                        line.record_id,
                        line.object_sha256,
                        line.object_bytes,
                        line.title,
                        json.dumps(line.tags),
                    )
                    for line in lines
                ],
            )
            EventOutbox.append(
                conn,
                Event.create(
                    EventType.MANIFEST_BUILT,
                    tenant_id,
                    item_id=manifest.id,
                    value=manifest.sha256,
                    payload={
                        "scope_kind": scope_kind,
                        "scope_id": scope_id,
                        "object_count": manifest.object_count,
                    },
                ),
            )

        excluded = len(rows) - len(lines)
        logger.info(
            f"Built manifest {manifest.id} for {scope_kind}:{scope_id} "
            f"({manifest.object_count} records, {excluded} excluded)"
        )
        return manifest

    def get_manifest(self, tenant_id: str, manifest_id: str) -> Manifest:
        """
        Get a manifest with its lines.

        Raises:
            NotFoundError: If the manifest does not exist for the tenant.
        """
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evd_manifest WHERE tenant_id = ? AND id = ?",
                (tenant_id, manifest_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Manifest not found: {manifest_id}", tenant_id=tenant_id)
        manifest = Manifest.from_row(row)
        manifest.lines = self.get_lines(tenant_id, manifest_id)
        return manifest

    def get_lines(self, tenant_id: str, manifest_id: str) -> list[ManifestLine]:
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT l.* FROM evd_manifest_line l
                JOIN evd_manifest m ON m.id = l.manifest_id
                WHERE m.tenant_id = ? AND l.manifest_id = ?
                ORDER BY l.position
                """,
                (tenant_id, manifest_id),
            ).fetchall()
        return [ManifestLine.from_row(row) for row in rows]

    def list_manifests(
        self, tenant_id: str, scope_kind: str, scope_id: str
    ) -> list[Manifest]:
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM evd_manifest
                WHERE tenant_id = ? AND scope_kind = ? AND scope_id = ?
                ORDER BY created_at, id
                """,
                (tenant_id, scope_kind.upper(), scope_id),
            ).fetchall()
        return [Manifest.from_row(row) for row in rows]

    def verify(self, tenant_id: str, manifest_id: str) -> bool:
        """Recompute the checksum from the stored lines and compare."""
        manifest = self.get_manifest(tenant_id, manifest_id)
        ok = compute_checksum(manifest.lines) == manifest.sha256
        if not ok:
            logger.warning(f"Manifest {manifest_id} failed checksum verification")
        return ok
