"""
Evidence record and link registry.

Records are the logical layer over content-addressed objects: the same
object may back many records (one per business context), and a record may
be linked to many work items. Links are idempotent on
(tenant, record, kind, ref).
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any

from govflow.errors import NotFoundError, ValidationError
from govflow.events.models import Event, EventType
from govflow.events.outbox import EventOutbox
from govflow.storage.database import Database
from govflow.storage.evidence_store import EvidenceStore
from govflow.storage.models import (
    EvidenceLink,
    EvidenceRecord,
    PiiLevel,
    check_tenant,
    format_ts,
    new_id,
    require_text,
    utcnow,
)

logger = logging.getLogger(__name__)


def normalize_tags(tags: Any) -> list[str]:
    """Validate tags and return them as a sorted, de-duplicated list."""
    if tags is None:
        return []
    if isinstance(tags, str) or not all(isinstance(t, str) for t in tags):
        raise ValidationError("tags must be a list of strings")
    return sorted({t.strip() for t in tags if t.strip()})


class EvidenceRegistry:
    """
    Evidence records and their links to work items.

    Example:
        registry = EvidenceRegistry(db, store)

        record = registry.create_record(
            "acme",
            obj.id,
            {"source": "BANK", "source_id": "stmt-2025-01", "title": "Bank statement"},
            created_by="alice",
        )
        registry.link("acme", record.id, "CLOSE_TASK", task_id, added_by="alice")
        linked = registry.query_by_ref("acme", "CLOSE_TASK", task_id)
    """

    def __init__(self, db: Database, store: EvidenceStore) -> None:
        self.db = db
        self.store = store

    # -------------------------------------------------------------------------
    # Records
    # -------------------------------------------------------------------------

    def create_record(
        self,
        tenant_id: str,
        object_id: str,
        metadata: dict[str, Any] | None,
        created_by: str,
    ) -> EvidenceRecord:
        """
        Create a new record over an existing object.

        Always creates a new record, even when the object was deduplicated.

        Args:
            tenant_id: Owning tenant.
            object_id: EvidenceObject the record describes.
            metadata: source, source_id and title (required); note, tags and
                pii_level (optional).
            created_by: Acting identity.

        Raises:
            NotFoundError: If the object does not exist for the tenant.
            ValidationError: If required metadata is missing.
        """
        check_tenant(tenant_id)
        created_by = require_text(created_by, "created_by", tenant_id)
        metadata = metadata or {}
        if not isinstance(metadata, dict):
            raise ValidationError("Record metadata must be a mapping", tenant_id=tenant_id)
        obj = self.store.get_object(tenant_id, object_id)

        record = EvidenceRecord(
            id=new_id(),
            tenant_id=tenant_id,
            object_id=obj.id,
            source=require_text(metadata.get("source"), "source", tenant_id).upper(),
            source_id=require_text(metadata.get("source_id"), "source_id", tenant_id),
            title=require_text(metadata.get("title"), "title", tenant_id),
            note=metadata.get("note"),
            tags=normalize_tags(metadata.get("tags")),
            pii_level=PiiLevel.parse(metadata.get("pii_level") or PiiLevel.NONE),
            created_by=created_by,
            created_at=utcnow(),
        )

        with self.db.connection() as conn:
            conn.execute(
                """
                INSERT INTO evd_record (
                    id, tenant_id, object_id, source, source_id, title,
                    note, tags_json, pii_level, created_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.tenant_id,
                    record.object_id,
                    record.source,
                    record.source_id,
                    record.title,
                    record.note,
                    json.dumps(record.tags),
                    record.pii_level.value,
                    record.created_by,
                    format_ts(record.created_at),
                ),
            )

        logger.info(f"Created evidence record {record.id} over object {obj.id}")
        return record

    def get_record(self, tenant_id: str, record_id: str) -> EvidenceRecord:
        """
        Raises:
            NotFoundError: If the record does not exist for the tenant.
        """
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evd_record WHERE tenant_id = ? AND id = ?",
                (tenant_id, record_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Evidence record not found: {record_id}", tenant_id=tenant_id)
        return EvidenceRecord.from_row(row)

    def update_record(
        self,
        tenant_id: str,
        record_id: str,
        title: str | None = None,
        note: str | None = None,
        tags: list[str] | None = None,
        pii_level: PiiLevel | str | None = None,
    ) -> EvidenceRecord:
        """
        Edit record metadata. Arguments left as None are unchanged.

        Sealed manifests keep their own snapshot, so edits never change a
        manifest's checksum.
        """
        record = self.get_record(tenant_id, record_id)
        if title is not None:
            record.title = require_text(title, "title", tenant_id)
        if note is not None:
            record.note = note
        if tags is not None:
            record.tags = normalize_tags(tags)
        if pii_level is not None:
            record.pii_level = PiiLevel.parse(pii_level)

        with self.db.connection() as conn:
            conn.execute(
                """
                UPDATE evd_record
                SET title = ?, note = ?, tags_json = ?, pii_level = ?
                WHERE tenant_id = ? AND id = ?
                """,
                (
                    record.title,
                    record.note,
                    json.dumps(record.tags),
                    record.pii_level.value,
                    tenant_id,
                    record_id,
                ),
            )
        return record

    def list_records(self, tenant_id: str, limit: int = 100) -> list[EvidenceRecord]:
        """Most recent records first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM evd_record WHERE tenant_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
                """,
                (tenant_id, limit),
            ).fetchall()
        return [EvidenceRecord.from_row(row) for row in rows]

    # -------------------------------------------------------------------------
    # Links
    # -------------------------------------------------------------------------

    def link(
        self,
        tenant_id: str,
        record_id: str,
        kind: str,
        ref_id: str,
        added_by: str,
    ) -> EvidenceLink:
        """
        Link a record to a work-item-shaped reference.

        Idempotent: linking the same (record, kind, ref) twice returns the
        existing link.

        Raises:
            NotFoundError: If the record does not exist for the tenant.
        """
        with self.db.transaction() as conn:
            return self.link_in(conn, tenant_id, record_id, kind, ref_id, added_by)

    def link_in(
        self,
        conn: sqlite3.Connection,
        tenant_id: str,
        record_id: str,
        kind: str,
        ref_id: str,
        added_by: str,
    ) -> EvidenceLink:
        """Link using the caller's connection, so it joins their transaction."""
        check_tenant(tenant_id)
        kind = require_text(kind, "kind", tenant_id).upper()
        ref_id = require_text(ref_id, "ref_id", tenant_id)
        added_by = require_text(added_by, "added_by", tenant_id)

        exists = conn.execute(
            "SELECT 1 FROM evd_record WHERE tenant_id = ? AND id = ?",
            (tenant_id, record_id),
        ).fetchone()
        if exists is None:
            raise NotFoundError(f"Evidence record not found: {record_id}", tenant_id=tenant_id)

        cursor = conn.execute(
            """
            INSERT INTO evd_link (id, tenant_id, record_id, kind, ref_id, added_by, added_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id, record_id, kind, ref_id) DO NOTHING
            """,
            (new_id(), tenant_id, record_id, kind, ref_id, added_by, format_ts(utcnow())),
        )

        row = conn.execute(
            """
            SELECT * FROM evd_link
            WHERE tenant_id = ? AND record_id = ? AND kind = ? AND ref_id = ?
            """,
            (tenant_id, record_id, kind, ref_id),
        ).fetchone()
        link = EvidenceLink.from_row(row)

        if cursor.rowcount == 1:
            EventOutbox.append(
                conn,
                Event.create(
                    EventType.EVIDENCE_LINKED,
                    tenant_id,
                    item_id=ref_id,
                    value=kind,
                    payload={"record_id": record_id, "added_by": added_by},
                ),
            )
            logger.info(f"Linked evidence record {record_id} to {link.ref}")
        return link

    def unlink(self, tenant_id: str, record_id: str, kind: str, ref_id: str) -> bool:
        """
        Remove a link. The record and its object are never deleted.

        Returns:
            True if a link was removed.
        """
        with self.db.connection() as conn:
            cursor = conn.execute(
                """
                DELETE FROM evd_link
                WHERE tenant_id = ? AND record_id = ? AND kind = ? AND ref_id = ?
                """,
                (tenant_id, record_id, kind.upper(), ref_id),
            )
        return cursor.rowcount > 0

    def query_by_ref(self, tenant_id: str, kind: str, ref_id: str) -> list[EvidenceRecord]:
        """Records linked to a reference, ordered by (created_at, id)."""
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT r.* FROM evd_link l
                JOIN evd_record r ON r.id = l.record_id AND r.tenant_id = l.tenant_id
                WHERE l.tenant_id = ? AND l.kind = ? AND l.ref_id = ?
                ORDER BY r.created_at, r.id
                """,
                (tenant_id, kind.upper(), ref_id),
            ).fetchall()
        return [EvidenceRecord.from_row(row) for row in rows]

    def count_by_ref(self, tenant_id: str, kind: str, ref_id: str) -> int:
        with self.db.connection() as conn:
            return count_links(conn, tenant_id, kind, ref_id)

    def links_for_record(self, tenant_id: str, record_id: str) -> list[EvidenceLink]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM evd_link WHERE tenant_id = ? AND record_id = ? ORDER BY added_at",
                (tenant_id, record_id),
            ).fetchall()
        return [EvidenceLink.from_row(row) for row in rows]


def count_links(conn: sqlite3.Connection, tenant_id: str, kind: str, ref_id: str) -> int:
    """Number of records linked to a reference, on the caller's connection."""
    return conn.execute(
        "SELECT COUNT(*) FROM evd_link WHERE tenant_id = ? AND kind = ? AND ref_id = ?",
        (tenant_id, kind.upper(), ref_id),
    ).fetchone()[0]
