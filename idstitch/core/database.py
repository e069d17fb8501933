"""idstitch.core.database

The store is the only shared state.

Every request gets its own connection and its own `BEGIN IMMEDIATE`
transaction. Nothing about identities is cached between requests; every
operation re-reads what it needs inside the transaction it mutates in.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from idstitch.core.exceptions import TransientStoreError

SCHEMA = """
-- ============================================================
-- Events (append-only; only user_id is ever rewritten)
-- ============================================================
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_name TEXT NOT NULL,
    event_category TEXT,
    event_detail TEXT,
    distinct_id TEXT NOT NULL,
    user_id TEXT,
    session_id TEXT,
    platform TEXT NOT NULL CHECK(platform IN ('web', 'mobile', 'server', 'desktop', 'unknown')),
    country_code TEXT CHECK(country_code IS NULL OR length(country_code) = 2),
    ts TEXT NOT NULL,
    properties TEXT NOT NULL DEFAULT '{}',
    created_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%f+00:00', 'now'))
);

CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
CREATE INDEX IF NOT EXISTS idx_events_name ON events(event_name);
CREATE INDEX IF NOT EXISTS idx_events_distinct_id ON events(distinct_id);
CREATE INDEX IF NOT EXISTS idx_events_user_id ON events(user_id) WHERE user_id IS NOT NULL;

-- ============================================================
-- Identities (one row per distinct identifier)
-- ============================================================
CREATE TABLE IF NOT EXISTS identities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    distinct_id TEXT NOT NULL UNIQUE,
    user_id TEXT,
    anonymous_id TEXT,
    state TEXT NOT NULL DEFAULT 'anonymous' CHECK(state IN ('anonymous', 'identified')),
    email TEXT,
    first_name TEXT,
    last_name TEXT,
    properties TEXT,
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    identified_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_identities_user_id ON identities(user_id) WHERE user_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_identities_anonymous_id ON identities(anonymous_id)
    WHERE anonymous_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_identities_state ON identities(state);

-- ============================================================
-- Identity devices (the device_ids set; grows, never shrinks)
-- ============================================================
CREATE TABLE IF NOT EXISTS identity_devices (
    identity_id INTEGER NOT NULL REFERENCES identities(id) ON DELETE CASCADE,
    device_id TEXT NOT NULL,
    first_seen TEXT NOT NULL,
    PRIMARY KEY (identity_id, device_id)
);

CREATE INDEX IF NOT EXISTS idx_identity_devices_device ON identity_devices(device_id);

-- ============================================================
-- Identity mappings (merge ledger)
-- ============================================================
CREATE TABLE IF NOT EXISTS identity_mappings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    canonical_user_id TEXT NOT NULL,
    mapped_id TEXT NOT NULL,
    mapping_type TEXT NOT NULL CHECK(mapping_type IN ('device_id', 'user_id', 'email')),
    confidence_score REAL NOT NULL DEFAULT 1.0
        CHECK(confidence_score >= 0.0 AND confidence_score <= 1.0),
    source TEXT NOT NULL DEFAULT 'identify_call',
    events_stitched INTEGER NOT NULL DEFAULT 0 CHECK(events_stitched >= 0),
    first_seen TEXT NOT NULL,
    last_seen TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (canonical_user_id, mapped_id, mapping_type)
);

CREATE INDEX IF NOT EXISTS idx_identity_mappings_lookup ON identity_mappings(mapped_id, mapping_type);
CREATE INDEX IF NOT EXISTS idx_identity_mappings_canonical ON identity_mappings(canonical_user_id);

-- ============================================================
-- Audit Log
-- ============================================================
CREATE TABLE IF NOT EXISTS audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    ts TEXT NOT NULL,
    action TEXT NOT NULL,
    actor TEXT,
    component TEXT,
    details TEXT
);

CREATE INDEX IF NOT EXISTS idx_audit_ts ON audit_log(ts);
CREATE INDEX IF NOT EXISTS idx_audit_action ON audit_log(action);
"""


@dataclass
class Database:
    """SQLite-backed store handle. Open at start, `close()` at shutdown."""

    db_path: Path
    timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._closed = False
        self._state_lock = threading.Lock()
        self._init_schema()

    def close(self) -> None:
        with self._state_lock:
            self._closed = True

    @property
    def closed(self) -> bool:
        with self._state_lock:
            return self._closed

    def _connect(self) -> sqlite3.Connection:
        if self.closed:
            raise TransientStoreError("store is closed")
        try:
            # isolation_level=None: transactions are opened explicitly below.
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.timeout_seconds,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys=ON")
        except sqlite3.Error as e:
            raise TransientStoreError(f"cannot open store at {self.db_path}: {e}") from e
        return conn

    def _init_schema(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise TransientStoreError(f"schema init failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """One atomic unit of work.

        Commits when the block exits cleanly; any exception rolls everything back.
        `sqlite3` failures surface as `TransientStoreError`.
        """

        conn = self._connect()
        try:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except sqlite3.Error as e:
            raise TransientStoreError(f"transaction failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        """Read-only connection. Each statement sees a committed snapshot."""

        conn = self._connect()
        try:
            yield conn
        except sqlite3.Error as e:
            raise TransientStoreError(f"read failed: {e}") from e
        finally:
            conn.close()
