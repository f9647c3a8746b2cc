"""
Content-addressed evidence object storage for govflow.

Blobs are addressed by the SHA-256 of their bytes and deduplicated per
tenant: uploading identical bytes twice returns the same EvidenceObject.

Storage Structure:
    data/
        govflow.db                          # SQLite database
        objects/
            {tenant_id}/
                {sha[:2]}/
                    {sha256}                # raw blob bytes

Design Decisions:
    - The blob path is a pure function of (tenant, hash), so concurrent
      identical uploads write the same file and converge
    - Atomic file writes (temp file + rename) prevent torn blobs
    - The UNIQUE(tenant_id, sha256) constraint arbitrates concurrent
      inserts; the loser reads the winner's row
    - Reads re-hash the streamed content and fail on tampering
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import sqlite3
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

from govflow.errors import IntegrityError, NotFoundError, StorageIOError, ValidationError
from govflow.storage.database import Database
from govflow.storage.models import (
    EvidenceObject,
    check_tenant,
    format_ts,
    new_id,
    require_text,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 64 * 1024


def sha256_of(data: bytes) -> str:
    """Hex SHA-256 digest of a byte string."""
    return hashlib.sha256(data).hexdigest()


class EvidenceStore:
    """
    Immutable, deduplicated blob storage plus the evd_object table.

    Example:
        store = EvidenceStore(db)

        obj = store.put("acme", b"%PDF-1.7 ...", "application/pdf", "alice")
        same = store.put("acme", b"%PDF-1.7 ...", "application/pdf", "bob")
        assert obj.id == same.id

        content = store.read_bytes(obj)

    Attributes:
        db: Shared database.
        objects_dir: Root directory for blob files.
        chunk_size: Read size used when streaming blobs.
    """

    def __init__(self, db: Database, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.db = db
        self.objects_dir = db.data_dir / "objects"
        self.chunk_size = chunk_size

        try:
            self.objects_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create objects directory: {e}") from e

    @staticmethod
    def verify(data: bytes, expected_sha256: str) -> bool:
        """Check whether bytes hash to the expected digest."""
        return sha256_of(data) == expected_sha256.lower()

    def put(
        self,
        tenant_id: str,
        data: bytes,
        mime: str,
        uploaded_by: str,
        declared_sha256: str | None = None,
    ) -> EvidenceObject:
        """
        Store bytes, deduplicating by hash.

        Args:
            tenant_id: Owning tenant.
            data: Blob content.
            mime: MIME type of the content.
            uploaded_by: Actor performing the upload.
            declared_sha256: Optional hash the caller claims the bytes have.

        Returns:
            The new EvidenceObject, or the existing one for identical bytes.

        Raises:
            IntegrityError: If declared_sha256 does not match the content.
            StorageIOError: If the blob or row cannot be written.
        """
        return self.put_stream(tenant_id, io.BytesIO(data), mime, uploaded_by, declared_sha256)

    def put_file(
        self,
        tenant_id: str,
        path: Path,
        mime: str,
        uploaded_by: str,
        declared_sha256: str | None = None,
    ) -> EvidenceObject:
        """Store the content of a local file without loading it into memory."""
        try:
            with open(path, "rb") as f:
                return self.put_stream(tenant_id, f, mime, uploaded_by, declared_sha256)
        except OSError as e:
            raise StorageIOError(f"Cannot read {path}: {e}") from e

    def put_stream(
        self,
        tenant_id: str,
        stream: BinaryIO,
        mime: str,
        uploaded_by: str,
        declared_sha256: str | None = None,
    ) -> EvidenceObject:
        """
        Store content read from a binary stream.

        The stream is copied into a temporary file while being hashed. The
        temporary file is renamed into its content address only after the
        hash is known and checked.
        """
        check_tenant(tenant_id)
        mime = require_text(mime, "mime", tenant_id)
        uploaded_by = require_text(uploaded_by, "uploaded_by", tenant_id)

        tenant_dir = self.objects_dir / tenant_id
        try:
            tenant_dir.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(suffix=".part", dir=str(tenant_dir))
        except OSError as e:
            raise StorageIOError(f"Cannot stage upload: {e}", tenant_id=tenant_id) from e

        digest = hashlib.sha256()
        size = 0
        try:
            try:
                with os.fdopen(temp_fd, "wb") as f:
                    for chunk in iter(lambda: stream.read(self.chunk_size), b""):
                        digest.update(chunk)
                        size += len(chunk)
                        f.write(chunk)
            except OSError as e:
                raise StorageIOError(f"Cannot stage upload: {e}", tenant_id=tenant_id) from e

            sha256 = digest.hexdigest()
            if declared_sha256 is not None and declared_sha256.lower() != sha256:
                raise IntegrityError(
                    f"Declared hash {declared_sha256} does not match content hash {sha256}",
                    tenant_id=tenant_id,
                )

            existing = self.find_by_hash(tenant_id, sha256)
            if existing is not None:
                logger.debug(f"Deduplicated upload for tenant {tenant_id}: {sha256}")
                return existing

            relative = Path("objects") / tenant_id / sha256[:2] / sha256
            final_path = self.db.data_dir / relative
            try:
                final_path.parent.mkdir(parents=True, exist_ok=True)
                os.replace(temp_path, final_path)
            except OSError as e:
                raise StorageIOError(f"Cannot write blob: {e}", tenant_id=tenant_id) from e
        finally:
            if os.path.exists(temp_path):
                os.unlink(temp_path)

        obj = EvidenceObject(
            id=new_id(),
            tenant_id=tenant_id,
            sha256=sha256,
            size_bytes=size,
            mime=mime,
            storage_uri=relative.as_posix(),
            uploaded_by=uploaded_by,
            uploaded_at=utcnow(),
        )

        try:
            with self.db.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO evd_object (
                        id, tenant_id, sha256, size_bytes, mime,
                        storage_uri, uploaded_by, uploaded_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        obj.id,
                        obj.tenant_id,
                        obj.sha256,
                        obj.size_bytes,
                        obj.mime,
                        obj.storage_uri,
                        obj.uploaded_by,
                        format_ts(obj.uploaded_at),
                    ),
                )
        except sqlite3.IntegrityError:
            # Lost a race with an identical upload
            winner = self.find_by_hash(tenant_id, sha256)
            if winner is None:
                raise StorageIOError(
                    f"Object {sha256} vanished after a duplicate insert", tenant_id=tenant_id
                ) from None
            return winner

        logger.info(f"Stored evidence object {obj.id} ({size} bytes) for tenant {tenant_id}")
        return obj

    def get_object(self, tenant_id: str, object_id: str) -> EvidenceObject:
        """
        Get an object by id.

        Raises:
            NotFoundError: If the object does not exist for the tenant.
        """
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evd_object WHERE tenant_id = ? AND id = ?",
                (tenant_id, object_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Evidence object not found: {object_id}", tenant_id=tenant_id)
        return EvidenceObject.from_row(row)

    def find_by_hash(self, tenant_id: str, sha256: str) -> EvidenceObject | None:
        """Get the object with the given hash, if the tenant has one."""
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evd_object WHERE tenant_id = ? AND sha256 = ?",
                (tenant_id, sha256.lower()),
            ).fetchone()
        return EvidenceObject.from_row(row) if row else None

    def blob_path(self, obj: EvidenceObject) -> Path:
        """Absolute path of an object's blob."""
        return self.db.data_dir / obj.storage_uri

    def iter_bytes(self, obj: EvidenceObject, chunk_size: int | None = None) -> Iterator[bytes]:
        """
        Stream an object's content in chunks.

        The content is re-hashed as it is read; after the last chunk the
        digest is compared with the recorded hash.

        Raises:
            IntegrityError: If the stored bytes no longer match obj.sha256.
            StorageIOError: If the blob cannot be read.
        """
        size = chunk_size or self.chunk_size
        digest = hashlib.sha256()
        try:
            with open(self.blob_path(obj), "rb") as f:
                for chunk in iter(lambda: f.read(size), b""):
                    digest.update(chunk)
                    yield chunk
        except OSError as e:
            raise StorageIOError(
                f"Cannot read blob for object {obj.id}: {e}", tenant_id=obj.tenant_id
            ) from e

        if digest.hexdigest() != obj.sha256:
            raise IntegrityError(
                f"Evidence object {obj.id} failed integrity check: "
                f"expected {obj.sha256}, got {digest.hexdigest()}",
                tenant_id=obj.tenant_id,
            )

    def read_bytes(self, obj: EvidenceObject) -> bytes:
        """Read an object's full content, verifying its hash."""
        return b"".join(self.iter_bytes(obj))

    def verify_object(self, obj: EvidenceObject) -> bool:
        """Re-hash a stored blob and compare with its recorded hash."""
        try:
            for _ in self.iter_bytes(obj):
                pass
        except IntegrityError:
            logger.warning(f"Integrity check failed for evidence object {obj.id}")
            return False
        return True

    def statistics(self, tenant_id: str) -> dict[str, int]:
        """Object count and total stored bytes for a tenant."""
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        with self.db.connection() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS object_count, COALESCE(SUM(size_bytes), 0) AS total_bytes
                FROM evd_object WHERE tenant_id = ?
                """,
                (tenant_id,),
            ).fetchone()
        return {"object_count": row["object_count"], "total_bytes": row["total_bytes"]}
