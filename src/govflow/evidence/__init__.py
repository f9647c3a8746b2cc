"""
Evidence subsystem.

Records and links over content-addressed objects, redaction rules,
manifests, binders and attestations.

Usage:
    from govflow.evidence import EvidenceRegistry, ManifestBuilder, BinderPackager

    record = registry.create_record(tenant_id, obj.id, metadata, created_by)
    registry.link(tenant_id, record.id, "CLOSE_TASK", task_id, added_by)
    manifest = manifests.build(tenant_id, "CLOSE_TASK", task_id, None, created_by)
    binder = packager.build(tenant_id, manifest.id, "ZIP", built_by)
"""

from govflow.evidence.attestation import AttestationSigner, generate_signing_key
from govflow.evidence.binder import BinderPackager
from govflow.evidence.hashing import canonical_json, canonical_sha256
from govflow.evidence.manifest import ManifestBuilder, compute_checksum
from govflow.evidence.redaction import RedactionCatalog
from govflow.evidence.registry import EvidenceRegistry

__all__ = [
    "EvidenceRegistry",
    "RedactionCatalog",
    "ManifestBuilder",
    "BinderPackager",
    "AttestationSigner",
    "generate_signing_key",
    "canonical_json",
    "canonical_sha256",
    "compute_checksum",
]
