"""
Error taxonomy for govflow.

Every operation in the engine fails with one of these exception types so
callers (route handlers, the CLI, the scheduler) can map failures to a
response without inspecting message text.

Kinds:
    - ValidationError: bad input, illegal state transition, missing evidence
    - ForbiddenError: the acting identity may not perform the transition
    - ConflictError: duplicate entity (e.g. a second run for a period)
    - LockedError: the period is administratively locked
    - NotFoundError: a referenced entity does not exist
    - IntegrityError: hash or checksum mismatch
    - StorageIOError: persistence or blob storage failure
"""

from __future__ import annotations


class GovflowError(Exception):
    """Base exception for all govflow errors."""

    kind = "ERROR"

    def __init__(self, message: str, tenant_id: str | None = None) -> None:
        self.message = message
        self.tenant_id = tenant_id
        super().__init__(message)


class ValidationError(GovflowError):
    """Raised for bad input or a transition the current state does not allow."""

    kind = "VALIDATION"


class ForbiddenError(GovflowError):
    """Raised when the actor is not allowed to perform a transition."""

    kind = "FORBIDDEN"


class ConflictError(GovflowError):
    """Raised when an entity that must be unique already exists."""

    kind = "CONFLICT"


class LockedError(GovflowError):
    """Raised when a period is administratively locked."""

    kind = "LOCKED"


class NotFoundError(GovflowError):
    """Raised when a referenced entity does not exist for the tenant."""

    kind = "NOT_FOUND"


class IntegrityError(GovflowError):
    """
    Raised when content does not match its recorded hash.

    Distinct from StorageIOError: the bytes were readable, they were just
    not the bytes we expected.
    """

    kind = "INTEGRITY"


class StorageIOError(GovflowError):
    """Raised when the database or blob storage fails or times out."""

    kind = "IO"
