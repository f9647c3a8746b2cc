"""
govflow - Governed Workflow Engine

The workflow core of a financial-close and compliance platform: recurring
work items with deadlines, an SLA clock that escalates overdue work, and an
immutable, content-addressed evidence store that proves what was reviewed
and when.

Key Features:
    - Work-item lifecycle with owner submission and approver review
    - SLA clock deriving OK / DUE_SOON / LATE / ESCALATED from elapsed time
    - Deduplicated evidence objects with many-to-many linkage to work items
    - Checksummed manifests, reproducible binders and signed attestations
    - Transactional event outbox for notification delivery

Design Principles:
    - Tenant isolation: every query is scoped by tenant id
    - Immutability: evidence, manifests, binders and attestations are append-only
    - Determinism: checksums are computed over canonical JSON
"""

__version__ = "0.1.0"
__author__ = ""
__email__ = ""

from govflow.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
