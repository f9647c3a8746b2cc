"""
Binder packager.

A binder is one archive holding a manifest and the bytes of every object
it lists, for hand-off to auditors.

Archive layout:
    manifest.json                           # canonical manifest document
    evidence/
        0001_{safe_title}.{ext}             # in manifest line order
        0002_{safe_title}.{ext}
        ...

Reproducibility:
    ZIP entries are stored uncompressed with a fixed 1980-01-01 timestamp;
    TAR entries use mtime 0, uid/gid 0 and empty owner names. Rebuilding a
    binder from the same manifest yields byte-identical output.

Object bytes are streamed in chunks into a temporary file and re-hashed on
the way; the archive is never held in memory.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import re
import sqlite3
import tarfile
import tempfile
import zipfile
from collections.abc import Iterator
from pathlib import Path

from govflow.errors import IntegrityError, NotFoundError, StorageIOError, ValidationError
from govflow.events.models import Event, EventType
from govflow.events.outbox import EventOutbox
from govflow.evidence.hashing import canonical_json
from govflow.evidence.manifest import ManifestBuilder, manifest_document
from govflow.storage.database import Database
from govflow.storage.evidence_store import EvidenceStore
from govflow.storage.models import (
    Binder,
    BinderFormat,
    EvidenceObject,
    Manifest,
    check_tenant,
    format_ts,
    new_id,
    require_text,
    utcnow,
)

logger = logging.getLogger(__name__)

ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

MIME_EXTENSIONS = {
    "application/pdf": "pdf",
    "text/csv": "csv",
    "application/json": "json",
    "text/plain": "txt",
    "image/png": "png",
    "image/jpeg": "jpg",
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def extension_for(mime: str) -> str:
    """File extension for a MIME type; "bin" when unknown."""
    return MIME_EXTENSIONS.get(mime.split(";")[0].strip().lower(), "bin")


def parse_format(value: BinderFormat | str) -> BinderFormat:
    if isinstance(value, BinderFormat):
        return value
    try:
        return BinderFormat(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid binder format '{value}'. Must be ZIP or TAR") from None


def safe_title(title: str, max_length: int = 60) -> str:
    """Reduce a title to a portable file name stem."""
    stem = _UNSAFE_CHARS.sub("_", title).strip("._")[:max_length].rstrip("._")
    return stem or "evidence"


class _ChunkReader(io.RawIOBase):
    """Read-only file object over an iterator of byte chunks."""

    def __init__(self, chunks: Iterator[bytes]) -> None:
        self._chunks = chunks
        self._buffer = b""

    def readable(self) -> bool:
        return True

    def readinto(self, b: bytearray) -> int:  # type: ignore[override]
        while not self._buffer:
            try:
                self._buffer = next(self._chunks)
            except StopIteration:
                return 0
        n = min(len(b), len(self._buffer))
        b[:n] = self._buffer[:n]
        self._buffer = self._buffer[n:]
        return n


class BinderPackager:
    """
    Packages manifests into binder archives.

    Example:
        packager = BinderPackager(db, store, manifests)
        binder = packager.build("acme", manifest.id, BinderFormat.ZIP, "alice")
        assert packager.verify("acme", binder.id)
    """

    def __init__(
        self,
        db: Database,
        store: EvidenceStore,
        manifests: ManifestBuilder,
        default_format: BinderFormat = BinderFormat.ZIP,
    ) -> None:
        self.db = db
        self.store = store
        self.manifests = manifests
        self.default_format = default_format
        self.binders_dir = db.data_dir / "binders"

    def build(
        self,
        tenant_id: str,
        manifest_id: str,
        fmt: BinderFormat | str | None,
        built_by: str,
        idempotency_key: str | None = None,
    ) -> Binder:
        """
        Package a manifest's objects into one archive.

        Args:
            tenant_id: Owning tenant.
            manifest_id: Manifest to package.
            fmt: ZIP or TAR; the configured default when None.
            built_by: Acting identity.
            idempotency_key: A repeated key returns the binder built first.

        Raises:
            NotFoundError: If the manifest does not exist.
            IntegrityError: If an object's stored bytes no longer match its hash.
            StorageIOError: If the archive cannot be written.
        """
        check_tenant(tenant_id)
        built_by = require_text(built_by, "built_by", tenant_id)
        if idempotency_key:
            existing = self.find_by_idempotency_key(tenant_id, idempotency_key)
            if existing is not None:
                logger.info(f"Returning existing binder {existing.id} for key {idempotency_key}")
                return existing

        manifest = self.manifests.get_manifest(tenant_id, manifest_id)
        fmt = parse_format(fmt) if fmt else self.default_format
        objects = self._resolve_objects(manifest)

        binder_id = new_id()
        tenant_dir = self.binders_dir / tenant_id
        try:
            tenant_dir.mkdir(parents=True, exist_ok=True)
            temp_fd, temp_path = tempfile.mkstemp(suffix=".part", dir=str(tenant_dir))
            os.close(temp_fd)
        except OSError as e:
            raise StorageIOError(f"Cannot stage binder: {e}", tenant_id=tenant_id) from e

        final_path = tenant_dir / f"{binder_id}.{fmt.extension}"
        try:
            try:
                if fmt == BinderFormat.ZIP:
                    self._write_zip(Path(temp_path), manifest, objects)
                else:
                    self._write_tar(Path(temp_path), manifest, objects)
                sha256, size = self._hash_file(Path(temp_path))
                os.replace(temp_path, final_path)
            except OSError as e:
                raise StorageIOError(f"Cannot write binder: {e}", tenant_id=tenant_id) from e
        finally:
            if os.path.exists(temp_path):
                os.unlink(temp_path)

        binder = Binder(
            id=binder_id,
            tenant_id=tenant_id,
            manifest_id=manifest.id,
            scope_kind=manifest.scope_kind,
            scope_id=manifest.scope_id,
            format=fmt,
            storage_uri=final_path.relative_to(self.db.data_dir).as_posix(),
            size_bytes=size,
            sha256=sha256,
            built_by=built_by,
            built_at=utcnow(),
            idempotency_key=idempotency_key or None,
        )

        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO evd_binder (
                        id, tenant_id, manifest_id, scope_kind, scope_id, format,
                        storage_uri, size_bytes, sha256, built_by, built_at, idempotency_key
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        binder.id,
                        binder.tenant_id,
                        binder.manifest_id,
                        binder.scope_kind,
                        binder.scope_id,
                        binder.format.value,
                        binder.storage_uri,
                        binder.size_bytes,
                        binder.sha256,
                        binder.built_by,
                        format_ts(binder.built_at),
                        binder.idempotency_key,
                    ),
                )
                EventOutbox.append(
                    conn,
                    Event.create(
                        EventType.BINDER_BUILT,
                        tenant_id,
                        item_id=binder.id,
                        value=binder.sha256,
                        payload={"manifest_id": manifest.id, "format": fmt.value},
                    ),
                )
        except sqlite3.IntegrityError:
            # Concurrent build with the same idempotency key won
            final_path.unlink(missing_ok=True)
            winner = self.find_by_idempotency_key(tenant_id, idempotency_key or "")
            if winner is None:
                raise
            return winner

        logger.info(
            f"Built {fmt.value} binder {binder.id} for manifest {manifest.id} "
            f"({binder.size_bytes} bytes)"
        )
        return binder

    def _resolve_objects(self, manifest: Manifest) -> list[EvidenceObject]:
        objects: list[EvidenceObject] = []
        for line in manifest.lines:
            obj = self.store.find_by_hash(manifest.tenant_id, line.object_sha256)
            if obj is None:
                raise NotFoundError(
                    f"Evidence object {line.object_sha256} listed in manifest "
                    f"{manifest.id} does not exist",
                    tenant_id=manifest.tenant_id,
                )
            objects.append(obj)
        return objects

    @staticmethod
    def _entry_names(manifest: Manifest, objects: list[EvidenceObject]) -> list[str]:
        return [
            f"evidence/{line.position + 1:04d}_{safe_title(line.title)}.{extension_for(obj.mime)}"
            for line, obj in zip(manifest.lines, objects, strict=True)
        ]

    def _write_zip(self, path: Path, manifest: Manifest, objects: list[EvidenceObject]) -> None:
        document = canonical_json(manifest_document(manifest))
        with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_STORED) as zf:
            info = zipfile.ZipInfo("manifest.json", date_time=ZIP_EPOCH)
            info.external_attr = 0o644 << 16
            zf.writestr(info, document)

            for name, obj in zip(self._entry_names(manifest, objects), objects, strict=True):
                info = zipfile.ZipInfo(name, date_time=ZIP_EPOCH)
                info.external_attr = 0o644 << 16
                info.file_size = obj.size_bytes
                with zf.open(info, "w") as dest:
                    for chunk in self.store.iter_bytes(obj):
                        dest.write(chunk)

    def _write_tar(self, path: Path, manifest: Manifest, objects: list[EvidenceObject]) -> None:
        document = canonical_json(manifest_document(manifest))
        with tarfile.open(path, "w", format=tarfile.PAX_FORMAT) as tf:
            tf.addfile(self._tar_info("manifest.json", len(document)), io.BytesIO(document))

            for name, obj in zip(self._entry_names(manifest, objects), objects, strict=True):
                chunks = self.store.iter_bytes(obj)
                tf.addfile(self._tar_info(name, obj.size_bytes), _ChunkReader(chunks))
                # Exhausting the stream runs the hash check
                for extra in chunks:
                    if extra:
                        raise IntegrityError(
                            f"Evidence object {obj.id} is larger than recorded",
                            tenant_id=obj.tenant_id,
                        )

    @staticmethod
    def _tar_info(name: str, size: int) -> tarfile.TarInfo:
        info = tarfile.TarInfo(name)
        info.size = size
        info.mtime = 0
        info.mode = 0o644
        info.uid = 0
        info.gid = 0
        info.uname = ""
        info.gname = ""
        return info

    def _hash_file(self, path: Path) -> tuple[str, int]:
        digest = hashlib.sha256()
        size = 0
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(self.store.chunk_size), b""):
                digest.update(chunk)
                size += len(chunk)
        return digest.hexdigest(), size

    def get_binder(self, tenant_id: str, binder_id: str) -> Binder:
        """
        Raises:
            NotFoundError: If the binder does not exist for the tenant.
        """
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evd_binder WHERE tenant_id = ? AND id = ?",
                (tenant_id, binder_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Binder not found: {binder_id}", tenant_id=tenant_id)
        return Binder.from_row(row)

    def find_by_idempotency_key(self, tenant_id: str, key: str) -> Binder | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evd_binder WHERE tenant_id = ? AND idempotency_key = ?",
                (tenant_id, key),
            ).fetchone()
        return Binder.from_row(row) if row else None

    def list_for_manifest(self, tenant_id: str, manifest_id: str) -> list[Binder]:
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM evd_binder WHERE tenant_id = ? AND manifest_id = ?
                ORDER BY built_at, id
                """,
                (tenant_id, manifest_id),
            ).fetchall()
        return [Binder.from_row(row) for row in rows]

    def artifact_path(self, binder: Binder) -> Path:
        """Absolute path of a binder's archive."""
        return self.db.data_dir / binder.storage_uri

    def verify(self, tenant_id: str, binder_id: str) -> bool:
        """Re-hash the stored archive and compare with the recorded hash."""
        binder = self.get_binder(tenant_id, binder_id)
        path = self.artifact_path(binder)
        try:
            sha256, size = self._hash_file(path)
        except FileNotFoundError:
            logger.warning(f"Binder {binder_id} artifact is missing: {path}")
            return False
        except OSError as e:
            raise StorageIOError(f"Cannot read binder {binder_id}: {e}", tenant_id=tenant_id) from e

        ok = sha256 == binder.sha256 and size == binder.size_bytes
        if not ok:
            logger.warning(f"Binder {binder_id} failed integrity verification")
        return ok
