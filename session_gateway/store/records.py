"""Record store for sessions, webhooks and the webhook delivery log.

``RecordStore`` is the interface the session and webhook layers depend on;
``SQLiteRecordStore`` is the bundled implementation.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from typing import Any, Protocol

from session_gateway.errors import ConflictError
from session_gateway.models import (
    DeliveryOutcome,
    SessionConfig,
    SessionRecord,
    SessionStatus,
    Webhook,
    WebhookDeliveryAttempt,
)
from session_gateway.store.db import GatewayDB


class RecordStore(Protocol):
    def create_session(self, record: SessionRecord) -> SessionRecord: ...

    def load_session(self, session_id: str) -> SessionRecord | None: ...

    def find_session(self, owner_id: str, name: str) -> SessionRecord | None: ...

    def list_sessions(self, owner_id: str | None = None) -> list[SessionRecord]: ...

    def save_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        last_connected_at: str | None = None,
    ) -> None: ...

    def deactivate_session(self, session_id: str) -> None: ...

    def create_webhook(self, webhook: Webhook) -> Webhook: ...

    def get_webhook(self, webhook_id: str) -> Webhook | None: ...

    def update_webhook(self, webhook: Webhook) -> Webhook: ...

    def delete_webhook(self, webhook_id: str) -> bool: ...

    def list_webhooks(self, session_id: str, active_only: bool = True) -> list[Webhook]: ...

    def append_delivery_log(self, entry: WebhookDeliveryAttempt) -> None: ...

    def list_delivery_log(self, webhook_id: str, limit: int = 100) -> list[WebhookDeliveryAttempt]: ...

    def get_delivery_attempt(self, attempt_id: str) -> WebhookDeliveryAttempt | None: ...


class SQLiteRecordStore:
    """SQLite-backed ``RecordStore``."""

    def __init__(self, db_path: str) -> None:
        self._db = GatewayDB(db_path)
        self._log_seq = self._max_log_seq()

    # --- Sessions ---

    def create_session(self, record: SessionRecord) -> SessionRecord:
        try:
            self._db.execute(
                """INSERT INTO gateway_sessions
                   (session_id, owner_id, name, status, config_json,
                    created_at, updated_at, last_connected_at, active)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.id,
                    record.owner_id,
                    record.name,
                    record.status.value,
                    record.config.model_dump_json(),
                    record.created_at,
                    record.updated_at,
                    record.last_connected_at,
                    int(record.active),
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f'Session with name "{record.name}" already exists') from exc
        return record

    def load_session(self, session_id: str) -> SessionRecord | None:
        row = self._db.fetch_one(
            "SELECT * FROM gateway_sessions WHERE session_id = ?", (session_id,),
        )
        return self._row_to_session(row) if row else None

    def find_session(self, owner_id: str, name: str) -> SessionRecord | None:
        row = self._db.fetch_one(
            """SELECT * FROM gateway_sessions
               WHERE owner_id = ? AND name = ? AND active = 1""",
            (owner_id, name),
        )
        return self._row_to_session(row) if row else None

    def list_sessions(self, owner_id: str | None = None) -> list[SessionRecord]:
        if owner_id is None:
            rows = self._db.fetch_all(
                "SELECT * FROM gateway_sessions WHERE active = 1 ORDER BY created_at",
            )
        else:
            rows = self._db.fetch_all(
                """SELECT * FROM gateway_sessions
                   WHERE active = 1 AND owner_id = ? ORDER BY created_at""",
                (owner_id,),
            )
        return [self._row_to_session(r) for r in rows]

    def save_session_status(
        self,
        session_id: str,
        status: SessionStatus,
        last_connected_at: str | None = None,
    ) -> None:
        now = _now_iso()
        if last_connected_at is None:
            self._db.execute(
                "UPDATE gateway_sessions SET status = ?, updated_at = ? WHERE session_id = ?",
                (status.value, now, session_id),
            )
        else:
            self._db.execute(
                """UPDATE gateway_sessions
                   SET status = ?, updated_at = ?, last_connected_at = ?
                   WHERE session_id = ?""",
                (status.value, now, last_connected_at, session_id),
            )

    def deactivate_session(self, session_id: str) -> None:
        self._db.execute(
            "UPDATE gateway_sessions SET active = 0, updated_at = ? WHERE session_id = ?",
            (_now_iso(), session_id),
        )
        self._db.execute(
            "UPDATE gateway_webhooks SET active = 0 WHERE session_id = ?", (session_id,),
        )

    # --- Webhooks ---

    def create_webhook(self, webhook: Webhook) -> Webhook:
        try:
            self._db.execute(
                """INSERT INTO gateway_webhooks
                   (webhook_id, session_id, url, events_json, secret, active,
                    max_attempts, backoff_base_seconds, timeout_seconds,
                    headers_json, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    webhook.id,
                    webhook.session_id,
                    webhook.url,
                    json.dumps(sorted(webhook.events)),
                    webhook.secret,
                    int(webhook.active),
                    webhook.max_attempts,
                    webhook.backoff_base_seconds,
                    webhook.timeout_seconds,
                    json.dumps(webhook.custom_headers),
                    webhook.created_at,
                ),
            )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Webhook {webhook.id} cannot be stored: {exc}") from exc
        return webhook

    def get_webhook(self, webhook_id: str) -> Webhook | None:
        row = self._db.fetch_one(
            "SELECT * FROM gateway_webhooks WHERE webhook_id = ?", (webhook_id,),
        )
        return self._row_to_webhook(row) if row else None

    def update_webhook(self, webhook: Webhook) -> Webhook:
        self._db.execute(
            """UPDATE gateway_webhooks
               SET url = ?, events_json = ?, secret = ?, active = ?,
                   max_attempts = ?, backoff_base_seconds = ?,
                   timeout_seconds = ?, headers_json = ?
               WHERE webhook_id = ?""",
            (
                webhook.url,
                json.dumps(sorted(webhook.events)),
                webhook.secret,
                int(webhook.active),
                webhook.max_attempts,
                webhook.backoff_base_seconds,
                webhook.timeout_seconds,
                json.dumps(webhook.custom_headers),
                webhook.id,
            ),
        )
        return webhook

    def delete_webhook(self, webhook_id: str) -> bool:
        return self._db.execute(
            "DELETE FROM gateway_webhooks WHERE webhook_id = ?", (webhook_id,),
        ) > 0

    def list_webhooks(self, session_id: str, active_only: bool = True) -> list[Webhook]:
        sql = "SELECT * FROM gateway_webhooks WHERE session_id = ?"
        if active_only:
            sql += " AND active = 1"
        rows = self._db.fetch_all(sql + " ORDER BY created_at", (session_id,))
        return [self._row_to_webhook(r) for r in rows]

    # --- Delivery log ---

    def append_delivery_log(self, entry: WebhookDeliveryAttempt) -> None:
        self._log_seq += 1
        self._db.execute(
            """INSERT INTO gateway_delivery_log
               (attempt_id, webhook_id, delivery_id, event_type, payload_json,
                attempt, outcome, status_code, error, duration_ms, timestamp, seq)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry.id,
                entry.webhook_id,
                entry.delivery_id,
                entry.event_type,
                json.dumps(entry.payload),
                entry.attempt,
                entry.outcome.value,
                entry.status_code,
                entry.error,
                entry.duration_ms,
                entry.timestamp,
                self._log_seq,
            ),
        )

    def list_delivery_log(self, webhook_id: str, limit: int = 100) -> list[WebhookDeliveryAttempt]:
        """Attempts for a webhook in the order they were written."""
        rows = self._db.fetch_all(
            """SELECT * FROM (
                   SELECT * FROM gateway_delivery_log
                   WHERE webhook_id = ? ORDER BY seq DESC LIMIT ?
               ) ORDER BY seq ASC""",
            (webhook_id, limit),
        )
        return [self._row_to_attempt(r) for r in rows]

    def get_delivery_attempt(self, attempt_id: str) -> WebhookDeliveryAttempt | None:
        row = self._db.fetch_one(
            "SELECT * FROM gateway_delivery_log WHERE attempt_id = ?", (attempt_id,),
        )
        return self._row_to_attempt(row) if row else None

    def close(self) -> None:
        self._db.close()

    # --- Row mapping ---

    def _max_log_seq(self) -> int:
        row = self._db.fetch_one("SELECT MAX(seq) AS seq FROM gateway_delivery_log")
        return int(row["seq"] or 0) if row else 0

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            id=row["session_id"],
            owner_id=row["owner_id"],
            name=row["name"],
            status=SessionStatus(row["status"]),
            config=SessionConfig.model_validate_json(row["config_json"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_connected_at=row["last_connected_at"],
            active=bool(row["active"]),
        )

    @staticmethod
    def _row_to_webhook(row: dict[str, Any]) -> Webhook:
        return Webhook(
            id=row["webhook_id"],
            session_id=row["session_id"],
            url=row["url"],
            events=frozenset(json.loads(row["events_json"])),
            secret=row["secret"],
            active=bool(row["active"]),
            max_attempts=row["max_attempts"],
            backoff_base_seconds=row["backoff_base_seconds"],
            timeout_seconds=row["timeout_seconds"],
            custom_headers=json.loads(row["headers_json"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_attempt(row: dict[str, Any]) -> WebhookDeliveryAttempt:
        return WebhookDeliveryAttempt(
            id=row["attempt_id"],
            webhook_id=row["webhook_id"],
            delivery_id=row["delivery_id"],
            event_type=row["event_type"],
            payload=json.loads(row["payload_json"]),
            attempt=row["attempt"],
            outcome=DeliveryOutcome(row["outcome"]),
            status_code=row["status_code"],
            error=row["error"],
            duration_ms=row["duration_ms"],
            timestamp=row["timestamp"],
        )


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()
