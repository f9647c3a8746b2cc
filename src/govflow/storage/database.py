"""
SQLite persistence for govflow.

The Database class owns the schema and hands out connections. Every
component (evidence store, registry, lifecycle manager, SLA clock, ...)
shares one Database and runs its own queries against it.

Design Decisions:
    - Connection-per-operation; SQLite's busy timeout bounds every wait
      on a locked database (storage.io_timeout_seconds)
    - Write transactions use BEGIN IMMEDIATE so the read-guard-update
      sequence of a transition holds the write lock from the start
    - WAL journal mode so readers are not blocked by a writer
    - sqlite3.IntegrityError is passed through unchanged: callers turn
      unique-constraint violations into ConflictError or re-read the
      winning row
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Generator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from govflow.errors import StorageIOError

logger = logging.getLogger(__name__)

# Database schema version for migrations
SCHEMA_VERSION = 1

DB_FILENAME = "govflow.db"

CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Content-addressed blobs
CREATE TABLE IF NOT EXISTS evd_object (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    sha256 TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    mime TEXT NOT NULL,
    storage_uri TEXT NOT NULL,
    uploaded_by TEXT NOT NULL,
    uploaded_at TEXT NOT NULL,
    UNIQUE (tenant_id, sha256)
);

CREATE TABLE IF NOT EXISTS evd_record (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    object_id TEXT NOT NULL REFERENCES evd_object(id),
    source TEXT NOT NULL,
    source_id TEXT NOT NULL,
    title TEXT NOT NULL,
    note TEXT,
    tags_json TEXT NOT NULL DEFAULT '[]',
    pii_level TEXT NOT NULL DEFAULT 'NONE',
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS evd_link (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    record_id TEXT NOT NULL REFERENCES evd_record(id),
    kind TEXT NOT NULL,
    ref_id TEXT NOT NULL,
    added_by TEXT NOT NULL,
    added_at TEXT NOT NULL,
    UNIQUE (tenant_id, record_id, kind, ref_id)
);

CREATE TABLE IF NOT EXISTS evd_redaction_rule (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    code TEXT NOT NULL,
    description TEXT,
    rule_json TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    updated_by TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (tenant_id, code)
);

CREATE TABLE IF NOT EXISTS evd_manifest (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    scope_kind TEXT NOT NULL,
    scope_id TEXT NOT NULL,
    filters_json TEXT NOT NULL,
    object_count INTEGER NOT NULL,
    total_bytes INTEGER NOT NULL,
    sha256 TEXT NOT NULL,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS evd_manifest_line (
    manifest_id TEXT NOT NULL REFERENCES evd_manifest(id),
    position INTEGER NOT NULL,
    record_id TEXT NOT NULL,
    object_sha256 TEXT NOT NULL,
    object_bytes INTEGER NOT NULL,
    title TEXT NOT NULL,
    tags_json TEXT NOT NULL DEFAULT '[]',
    PRIMARY KEY (manifest_id, position)
);

CREATE TABLE IF NOT EXISTS evd_binder (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    manifest_id TEXT NOT NULL REFERENCES evd_manifest(id),
    scope_kind TEXT NOT NULL,
    scope_id TEXT NOT NULL,
    format TEXT NOT NULL,
    storage_uri TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    sha256 TEXT NOT NULL,
    built_by TEXT NOT NULL,
    built_at TEXT NOT NULL,
    idempotency_key TEXT,
    UNIQUE (tenant_id, idempotency_key)
);

CREATE TABLE IF NOT EXISTS evd_attestation (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    binder_id TEXT NOT NULL REFERENCES evd_binder(id),
    signer_id TEXT NOT NULL,
    signer_role TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    sha256 TEXT NOT NULL,
    signature TEXT,
    key_fingerprint TEXT,
    signed_at TEXT NOT NULL,
    idempotency_key TEXT,
    UNIQUE (tenant_id, idempotency_key)
);

-- Workflow
CREATE TABLE IF NOT EXISTS wf_run (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    period TEXT NOT NULL,
    status TEXT NOT NULL,
    owner TEXT NOT NULL,
    notes TEXT,
    started_at TEXT,
    closed_at TEXT,
    created_by TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (tenant_id, period)
);

CREATE TABLE IF NOT EXISTS wf_period_lock (
    tenant_id TEXT NOT NULL,
    period TEXT NOT NULL,
    locked_by TEXT NOT NULL,
    locked_at TEXT NOT NULL,
    PRIMARY KEY (tenant_id, period)
);

CREATE TABLE IF NOT EXISTS wf_work_item (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    run_id TEXT REFERENCES wf_run(id),
    kind TEXT NOT NULL,
    code TEXT NOT NULL,
    title TEXT NOT NULL,
    owner TEXT NOT NULL,
    approver TEXT,
    required_role TEXT NOT NULL DEFAULT 'MANAGER',
    due_at TEXT,
    state TEXT NOT NULL,
    sla_severity TEXT NOT NULL DEFAULT 'OK',
    sla_changed_at TEXT,
    aging_days INTEGER NOT NULL DEFAULT 0,
    evidence_required INTEGER NOT NULL DEFAULT 0,
    payload_json TEXT NOT NULL DEFAULT '{}',
    return_reason TEXT,
    parent_id TEXT,
    submitted_at TEXT,
    approved_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS wf_sla_policy (
    tenant_id TEXT NOT NULL,
    code TEXT NOT NULL,
    tz TEXT NOT NULL,
    cutoff_day INTEGER NOT NULL,
    grace_hours INTEGER NOT NULL,
    escal1_hours INTEGER NOT NULL,
    escal2_hours INTEGER NOT NULL,
    escal_to_lvl1 TEXT,
    escal_to_lvl2 TEXT,
    updated_by TEXT,
    updated_at TEXT,
    PRIMARY KEY (tenant_id, code)
);

-- Events written in the same transaction as the change that produced them
CREATE TABLE IF NOT EXISTS event_outbox (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    type TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    item_id TEXT,
    value TEXT,
    payload_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL,
    dispatched_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_record_tenant ON evd_record(tenant_id, created_at);
CREATE INDEX IF NOT EXISTS idx_link_ref ON evd_link(tenant_id, kind, ref_id);
CREATE INDEX IF NOT EXISTS idx_manifest_scope ON evd_manifest(tenant_id, scope_kind, scope_id);
CREATE INDEX IF NOT EXISTS idx_binder_manifest ON evd_binder(tenant_id, manifest_id);
CREATE INDEX IF NOT EXISTS idx_attestation_binder ON evd_attestation(tenant_id, binder_id);
CREATE INDEX IF NOT EXISTS idx_item_state ON wf_work_item(tenant_id, state);
CREATE INDEX IF NOT EXISTS idx_item_run ON wf_work_item(tenant_id, run_id);
CREATE INDEX IF NOT EXISTS idx_outbox_pending ON event_outbox(dispatched_at, seq);
"""


class Database:
    """
    Shared SQLite database for all govflow components.

    Example:
        db = Database(data_dir=Path("./data"), timeout=5.0)

        with db.transaction() as conn:
            conn.execute("UPDATE wf_work_item SET ... WHERE id = ? AND state = ?", ...)

        with db.connection() as conn:
            rows = conn.execute("SELECT * FROM wf_run WHERE tenant_id = ?", ...)

    Attributes:
        data_dir: Base directory for all data storage.
        db_path: Path to the SQLite database file.
        timeout: Busy timeout in seconds.
    """

    def __init__(self, data_dir: Path | str, timeout: float = 10.0) -> None:
        if isinstance(data_dir, str):
            data_dir = Path(data_dir)

        self.data_dir = data_dir
        self.db_path = data_dir / DB_FILENAME
        self.timeout = timeout

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"Cannot create data directory {data_dir}: {e}") from e

        self._init_database()

    def _init_database(self) -> None:
        """Initialize the database schema."""
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(CREATE_TABLES_SQL)

            row = conn.execute(
                "SELECT version FROM schema_version ORDER BY version DESC LIMIT 1"
            ).fetchone()

            if row is None:
                conn.execute(
                    "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (SCHEMA_VERSION, datetime.now(UTC).isoformat()),
                )
                logger.info(f"Initialized database schema version {SCHEMA_VERSION}")
            elif row[0] < SCHEMA_VERSION:
                logger.warning(
                    f"Database schema version {row[0]} is older than "
                    f"expected version {SCHEMA_VERSION}"
                )

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.timeout,
            isolation_level=None,  # Autocommit mode, we manage transactions manually
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get an autocommit connection for reads and single statements.

        Yields:
            SQLite connection with row factory set.

        Raises:
            StorageIOError: If the database cannot be opened or a query fails.
        """
        try:
            conn = self._connect()
        except sqlite3.Error as e:
            raise StorageIOError(f"Cannot open database {self.db_path}: {e}") from e
        try:
            yield conn
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StorageIOError(f"Database error: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Run a block inside one write transaction.

        The transaction is committed when the block exits normally and
        rolled back on any exception, which is then re-raised.

        Raises:
            StorageIOError: If the database is busy past the timeout or a
                statement fails for a reason other than a constraint.
        """
        with self.connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise

    def statistics(self) -> dict[str, int]:
        """Row counts for the main tables."""
        tables = [
            "evd_object",
            "evd_record",
            "evd_link",
            "evd_manifest",
            "evd_binder",
            "evd_attestation",
            "wf_run",
            "wf_work_item",
        ]
        counts: dict[str, int] = {}
        with self.connection() as conn:
            for table in tables:
                counts[table] = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            counts["event_outbox_pending"] = conn.execute(
                "SELECT COUNT(*) FROM event_outbox WHERE dispatched_at IS NULL"
            ).fetchone()[0]
        return counts
