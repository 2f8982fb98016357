"""SQLite connection wrapper and schema for the gateway record store."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

from session_gateway.errors import ServiceUnavailableError

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS gateway_sessions (
    session_id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    config_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_connected_at TEXT,
    active INTEGER NOT NULL DEFAULT 1
);

-- Name uniqueness only among live sessions; soft-deleted rows keep their name
CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_owner_name
    ON gateway_sessions(owner_id, name) WHERE active = 1;

CREATE TABLE IF NOT EXISTS gateway_webhooks (
    webhook_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    url TEXT NOT NULL,
    events_json TEXT NOT NULL,
    secret TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    max_attempts INTEGER NOT NULL,
    backoff_base_seconds REAL NOT NULL,
    timeout_seconds REAL NOT NULL,
    headers_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES gateway_sessions(session_id)
);

CREATE INDEX IF NOT EXISTS idx_webhooks_session ON gateway_webhooks(session_id);

-- Append-only; rows are never updated
CREATE TABLE IF NOT EXISTS gateway_delivery_log (
    attempt_id TEXT PRIMARY KEY,
    webhook_id TEXT NOT NULL,
    delivery_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    outcome TEXT NOT NULL,
    status_code INTEGER,
    error TEXT,
    duration_ms INTEGER NOT NULL,
    timestamp TEXT NOT NULL,
    seq INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_delivery_log_webhook ON gateway_delivery_log(webhook_id, seq);
"""


class GatewayDB:
    """SQLite wrapper with WAL mode and dict rows.

    Every ``sqlite3.Error`` is re-raised as ``ServiceUnavailableError`` so
    callers see one failure type for an unreachable store.
    """

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path
        self._conn: sqlite3.Connection | None = None
        try:
            self._initialize()
        except (sqlite3.Error, OSError) as exc:
            raise ServiceUnavailableError(f"Record store unavailable: {exc}") from exc

    def _initialize(self) -> None:
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(SCHEMA_SQL)
        self._conn.commit()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise ServiceUnavailableError("Record store connection is closed")
        return self._conn

    def execute(self, sql: str, params: tuple[Any, ...] = ()) -> int:
        """Run a write statement and return the affected row count."""
        conn = self._connection()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
        except sqlite3.IntegrityError:
            conn.rollback()
            raise
        except sqlite3.Error as exc:
            raise ServiceUnavailableError(f"Record store unavailable: {exc}") from exc
        return cursor.rowcount

    def fetch_one(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        conn = self._connection()
        try:
            row = conn.execute(sql, params).fetchone()
        except sqlite3.Error as exc:
            raise ServiceUnavailableError(f"Record store unavailable: {exc}") from exc
        return dict(row) if row is not None else None

    def fetch_all(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        conn = self._connection()
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise ServiceUnavailableError(f"Record store unavailable: {exc}") from exc
        return [dict(row) for row in rows]

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self) -> GatewayDB:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()
