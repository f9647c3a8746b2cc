"""
Attestation signer.

An attestation is an append-only sign-off over one binder: who signed, in
which role, what they stated, and when. Its checksum covers
{binder_id, signer_id, signer_role, statement, signed_at}. When a signing
key is configured the checksum is also signed with Ed25519 so the record
can be verified without trusting the database.
"""

from __future__ import annotations

import base64
import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)

from govflow.config.settings import ConfigurationError
from govflow.errors import NotFoundError
from govflow.events.models import Event, EventType
from govflow.events.outbox import EventOutbox
from govflow.evidence.hashing import canonical_sha256, sha256_hex
from govflow.storage.database import Database
from govflow.storage.models import (
    Attestation,
    Role,
    check_tenant,
    format_ts,
    new_id,
    require_text,
    utcnow,
)

logger = logging.getLogger(__name__)

PAYLOAD_VERSION = "1.0"

CHECKSUM_FIELDS = ("binder_id", "signer_id", "signer_role", "statement", "signed_at")


def load_signing_key(path: Path | str) -> Ed25519PrivateKey:
    """
    Load a PEM-encoded, unencrypted Ed25519 private key.

    Raises:
        ConfigurationError: If the file is missing or not an Ed25519 key.
    """
    try:
        with open(path, "rb") as f:
            private_key = serialization.load_pem_private_key(f.read(), password=None)
    except OSError as e:
        raise ConfigurationError(f"Cannot read signing key {path}: {e}") from e
    except ValueError as e:
        raise ConfigurationError(f"Invalid signing key {path}: {e}") from e

    if not isinstance(private_key, Ed25519PrivateKey):
        raise ConfigurationError(f"Signing key {path} is not an Ed25519 key")
    return private_key


def key_fingerprint(public_key: Ed25519PublicKey) -> str:
    """SHA-256 of the raw public key bytes."""
    raw = public_key.public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return sha256_hex(raw)


def generate_signing_key(path: Path) -> str:
    """
    Create a new Ed25519 key and write it as PEM with owner-only permissions.

    Returns:
        The new key's fingerprint.

    Raises:
        ConfigurationError: If the file already exists or cannot be written.
    """
    if path.exists():
        raise ConfigurationError(f"Signing key already exists: {path}")

    private_key = Ed25519PrivateKey.generate()
    pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(pem)
    except OSError as e:
        raise ConfigurationError(f"Cannot write signing key {path}: {e}") from e

    return key_fingerprint(private_key.public_key())


class AttestationSigner:
    """
    Appends attestations over binders.

    Example:
        signer = AttestationSigner(db, signing_key_path="~/.govflow/signing.pem")
        attestation = signer.sign(
            "acme", binder.id, "carol", Role.CONTROLLER,
            "I attest the January close evidence is complete.",
        )
        assert signer.verify("acme", attestation.id)
    """

    def __init__(self, db: Database, signing_key_path: Path | str | None = None) -> None:
        self.db = db
        self._private_key: Ed25519PrivateKey | None = None
        self._fingerprint: str | None = None

        if signing_key_path:
            self._private_key = load_signing_key(Path(signing_key_path).expanduser())
            self._fingerprint = key_fingerprint(self._private_key.public_key())
            logger.debug(f"Loaded attestation signing key {self._fingerprint[:16]}")

    @property
    def signing_enabled(self) -> bool:
        return self._private_key is not None

    def sign(
        self,
        tenant_id: str,
        binder_id: str,
        signer_id: str,
        signer_role: Role | str,
        statement: str,
        metadata: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> Attestation:
        """
        Sign a statement over a binder.

        Raises:
            NotFoundError: If the binder does not exist for the tenant.
            ValidationError: If the statement is empty or the role unknown.
        """
        check_tenant(tenant_id)
        if idempotency_key:
            existing = self.find_by_idempotency_key(tenant_id, idempotency_key)
            if existing is not None:
                return existing

        signer_id = require_text(signer_id, "signer_id", tenant_id)
        statement = require_text(statement, "statement", tenant_id)
        role = Role.parse(signer_role)

        with self.db.connection() as conn:
            binder_row = conn.execute(
                "SELECT id, sha256, manifest_id FROM evd_binder WHERE tenant_id = ? AND id = ?",
                (tenant_id, binder_id),
            ).fetchone()
        if binder_row is None:
            raise NotFoundError(f"Binder not found: {binder_id}", tenant_id=tenant_id)

        signed_at = utcnow()
        covered = {
            "binder_id": binder_id,
            "signer_id": signer_id,
            "signer_role": role.value,
            "statement": statement,
            "signed_at": format_ts(signed_at),
        }
        checksum = canonical_sha256(covered)

        signature = None
        if self._private_key is not None:
            signature = base64.b64encode(self._private_key.sign(checksum.encode("ascii"))).decode()

        payload = {
            "version": PAYLOAD_VERSION,
            **covered,
            "binder_sha256": binder_row["sha256"],
            "manifest_id": binder_row["manifest_id"],
            "metadata": metadata or {},
        }
        attestation = Attestation(
            id=new_id(),
            tenant_id=tenant_id,
            binder_id=binder_id,
            signer_id=signer_id,
            signer_role=role,
            payload=payload,
            sha256=checksum,
            signed_at=signed_at,
            signature=signature,
            key_fingerprint=self._fingerprint if signature else None,
            idempotency_key=idempotency_key or None,
        )

        try:
            with self.db.transaction() as conn:
                conn.execute(
                    """
                    INSERT INTO evd_attestation (
                        id, tenant_id, binder_id, signer_id, signer_role, payload_json,
                        sha256, signature, key_fingerprint, signed_at, idempotency_key
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        attestation.id,
                        attestation.tenant_id,
                        attestation.binder_id,
                        attestation.signer_id,
                        attestation.signer_role.value,
                        json.dumps(attestation.payload, sort_keys=True),
                        attestation.sha256,
                        attestation.signature,
                        attestation.key_fingerprint,
                        format_ts(attestation.signed_at),
                        attestation.idempotency_key,
                    ),
                )
                EventOutbox.append(
                    conn,
                    Event.create(
                        EventType.ATTESTATION_SIGNED,
                        tenant_id,
                        item_id=attestation.id,
                        value=role.value,
                        payload={"binder_id": binder_id, "signer_id": signer_id},
                    ),
                )
        except sqlite3.IntegrityError:
            winner = self.find_by_idempotency_key(tenant_id, idempotency_key or "")
            if winner is None:
                raise
            return winner

        logger.info(
            f"Attestation {attestation.id} signed by {signer_id} ({role.value}) "
            f"over binder {binder_id}"
        )
        return attestation

    def get_attestation(self, tenant_id: str, attestation_id: str) -> Attestation:
        """
        Raises:
            NotFoundError: If the attestation does not exist for the tenant.
        """
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evd_attestation WHERE tenant_id = ? AND id = ?",
                (tenant_id, attestation_id),
            ).fetchone()
        if row is None:
            raise NotFoundError(f"Attestation not found: {attestation_id}", tenant_id=tenant_id)
        return Attestation.from_row(row)

    def find_by_idempotency_key(self, tenant_id: str, key: str) -> Attestation | None:
        with self.db.connection() as conn:
            row = conn.execute(
                "SELECT * FROM evd_attestation WHERE tenant_id = ? AND idempotency_key = ?",
                (tenant_id, key),
            ).fetchone()
        return Attestation.from_row(row) if row else None

    def list_for_binder(self, tenant_id: str, binder_id: str) -> list[Attestation]:
        with self.db.connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM evd_attestation WHERE tenant_id = ? AND binder_id = ?
                ORDER BY signed_at, id
                """,
                (tenant_id, binder_id),
            ).fetchall()
        return [Attestation.from_row(row) for row in rows]

    def verify(self, tenant_id: str, attestation_id: str) -> bool:
        """
        Recompute the checksum and, where present, check the signature.

        A signature made with a different key than the configured one is
        reported as unverifiable (False).
        """
        attestation = self.get_attestation(tenant_id, attestation_id)
        covered = {name: attestation.payload.get(name) for name in CHECKSUM_FIELDS}
        if (
            covered["binder_id"] != attestation.binder_id
            or covered["signer_id"] != attestation.signer_id
            or covered["signer_role"] != attestation.signer_role.value
            or canonical_sha256(covered) != attestation.sha256
        ):
            logger.warning(f"Attestation {attestation_id} failed checksum verification")
            return False

        if attestation.signature is None:
            return True

        if self._private_key is None or attestation.key_fingerprint != self._fingerprint:
            logger.warning(
                f"Attestation {attestation_id} is signed with key "
                f"{attestation.key_fingerprint}, which is not loaded"
            )
            return False

        try:
            self._private_key.public_key().verify(
                base64.b64decode(attestation.signature),
                attestation.sha256.encode("ascii"),
            )
        except InvalidSignature:
            logger.warning(f"Attestation {attestation_id} has an invalid signature")
            return False
        return True
