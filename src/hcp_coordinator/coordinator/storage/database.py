"""SQLite connection and schema management.

A single connection is shared by every component in the process and guarded by
a re-entrant lock. Multi-statement writes go through :meth:`Database.transaction`,
which takes SQLite's write lock up front (``BEGIN IMMEDIATE``) so that other
processes using the same file are serialized by the engine itself.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from hcp_coordinator.coordinator.lifecycle.errors import StorageFailure

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS coordination_requests (
    request_id      TEXT PRIMARY KEY,
    agent_id        TEXT NOT NULL,
    intent          TEXT NOT NULL,
    urgency         TEXT NOT NULL,
    state           TEXT NOT NULL DEFAULT 'SUBMITTED',
    context_package TEXT NOT NULL,
    response_schema TEXT,
    timeout_policy  TEXT NOT NULL,
    routing_hints   TEXT NOT NULL,
    trace_id        TEXT,
    idempotency_key TEXT UNIQUE,
    responder_id    TEXT NOT NULL,
    response_data   TEXT,
    responded_by    TEXT,
    responded_at    TEXT,
    submitted_at    TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    timeout_at      TEXT NOT NULL,
    delivered_at    TEXT
);

CREATE INDEX IF NOT EXISTS idx_cr_state ON coordination_requests(state);
CREATE INDEX IF NOT EXISTS idx_cr_agent_id ON coordination_requests(agent_id);
CREATE INDEX IF NOT EXISTS idx_cr_responder_id ON coordination_requests(responder_id);
CREATE INDEX IF NOT EXISTS idx_cr_timeout_at ON coordination_requests(timeout_at);

CREATE TABLE IF NOT EXISTS audit_events (
    seq         INTEGER PRIMARY KEY AUTOINCREMENT,
    event_id    TEXT NOT NULL UNIQUE,
    request_id  TEXT NOT NULL,
    event_type  TEXT NOT NULL,
    actor       TEXT NOT NULL,
    actor_type  TEXT NOT NULL,
    payload     TEXT NOT NULL DEFAULT '{}',
    created_at  TEXT NOT NULL,
    FOREIGN KEY (request_id) REFERENCES coordination_requests(request_id)
);

CREATE INDEX IF NOT EXISTS idx_audit_request_id ON audit_events(request_id);
"""


class Database:
    def __init__(self, path: Path | str, *, busy_timeout_ms: int = 5000) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)

        # isolation_level=None: we issue BEGIN/COMMIT ourselves.
        self._conn = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        if self.path != ":memory:":
            self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
        self._lock = threading.RLock()
        self._in_transaction = False
        logger.info("Database opened", extra={"path": self.path})

    def ensure_schema(self) -> None:
        with self._lock:
            try:
                self._conn.executescript(_CREATE_TABLES)
                row = self._conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
                if row is None:
                    self._conn.execute(
                        "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                    )
                elif row["version"] < SCHEMA_VERSION:
                    self._conn.execute("UPDATE schema_version SET version = ?", (SCHEMA_VERSION,))
            except sqlite3.Error as e:
                raise StorageFailure(f"Schema setup failed: {e}") from e

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._in_transaction:
                yield self._conn
                return
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageFailure(f"Could not start transaction: {e}") from e
            self._in_transaction = True
            try:
                yield self._conn
            except sqlite3.Error as e:
                self._conn.execute("ROLLBACK")
                raise StorageFailure(str(e)) from e
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                try:
                    self._conn.execute("COMMIT")
                except sqlite3.Error as e:
                    self._conn.execute("ROLLBACK")
                    raise StorageFailure(f"Commit failed: {e}") from e
            finally:
                self._in_transaction = False

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a single write statement and return the affected row count."""

        with self._lock:
            try:
                return self._conn.execute(sql, tuple(params)).rowcount
            except sqlite3.Error as e:
                raise StorageFailure(str(e)) from e

    def fetchone(self, sql: str, params: Sequence[Any] = ()) -> dict[str, Any] | None:
        with self._lock:
            try:
                row = self._conn.execute(sql, tuple(params)).fetchone()
            except sqlite3.Error as e:
                raise StorageFailure(str(e)) from e
        return dict(row) if row is not None else None

    def fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        with self._lock:
            try:
                rows = self._conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise StorageFailure(str(e)) from e
        return [dict(r) for r in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def open_database(path: Path | str, *, busy_timeout_ms: int = 5000) -> Database:
    db = Database(path, busy_timeout_ms=busy_timeout_ms)
    db.ensure_schema()
    return db
