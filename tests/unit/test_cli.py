"""Tests for the gateway CLI."""

from __future__ import annotations

import json
from pathlib import Path

from click.testing import CliRunner

from session_gateway.cli import cli
from session_gateway.models import DeliveryOutcome, SessionRecord, Webhook, WebhookDeliveryAttempt
from session_gateway.store.records import SQLiteRecordStore


def _seed(db_path: Path, url: str = "https://hooks.example.com/in") -> tuple[Webhook, WebhookDeliveryAttempt]:
    store = SQLiteRecordStore(str(db_path))
    session = store.create_session(SessionRecord(owner_id="o", name="s1"))
    webhook = store.create_webhook(Webhook(session_id=session.id, url=url))
    attempt = WebhookDeliveryAttempt(
        webhook_id=webhook.id,
        delivery_id="d1",
        event_type="session.status",
        payload={
            "event": "session.status",
            "session": session.id,
            "payload": {"status": "CONNECTED"},
            "timestamp": "2026-01-01T00:00:00+00:00",
        },
        attempt=1,
        outcome=DeliveryOutcome.TRANSIENT_FAILURE,
        status_code=503,
    )
    store.append_delivery_log(attempt)
    store.close()
    return webhook, attempt


def test_deliveries_list_outputs_json(tmp_path: Path) -> None:
    db = tmp_path / "gw.db"
    webhook, attempt = _seed(db)
    runner = CliRunner()
    result = runner.invoke(cli, ["--db", str(db), "deliveries", "list", webhook.id])
    assert result.exit_code == 0
    entries = json.loads(result.output)
    assert [e["id"] for e in entries] == [attempt.id]
    assert entries[0]["outcome"] == "transient_failure"


def test_deliveries_list_unknown_webhook_is_empty(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["--db", str(tmp_path / "gw.db"), "deliveries", "list", "nope"])
    assert result.exit_code == 0
    assert json.loads(result.output) == []


def test_db_path_from_environment(tmp_path: Path) -> None:
    db = tmp_path / "env.db"
    webhook, _ = _seed(db)
    runner = CliRunner()
    result = runner.invoke(cli, ["deliveries", "list", webhook.id], env={"GATEWAY_DB_PATH": str(db)})
    assert result.exit_code == 0
    assert len(json.loads(result.output)) == 1


def test_replay_unknown_attempt_fails(tmp_path: Path) -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["--db", str(tmp_path / "gw.db"), "deliveries", "replay", "missing"])
    assert result.exit_code != 0
    assert "not found" in result.output


def test_replay_invalid_url_logs_attempt_and_exits_nonzero(tmp_path: Path) -> None:
    db = tmp_path / "gw.db"
    webhook, attempt = _seed(db, url="not-a-url")
    runner = CliRunner()
    result = runner.invoke(cli, ["--db", str(db), "deliveries", "replay", attempt.id])
    assert result.exit_code == 1
    assert json.loads(result.output)["outcome"] == "invalid_config"

    store = SQLiteRecordStore(str(db))
    assert len(store.list_delivery_log(webhook.id)) == 2
    store.close()
