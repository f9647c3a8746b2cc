"""Canonical JSON encoding and SHA-256 helpers for checksums."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> bytes:
    """
    Encode a value as canonical JSON.

    Sorted keys, no insignificant whitespace, UTF-8. Two equal values always
    produce the same bytes, so their hashes can be compared across systems.
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def canonical_sha256(value: Any) -> str:
    """SHA-256 hex digest of a value's canonical JSON."""
    return sha256_hex(canonical_json(value))
