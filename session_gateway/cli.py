"""Click CLI for running the gateway and inspecting webhook deliveries."""

from __future__ import annotations

import asyncio
import json
import logging
import os

import click
import uvicorn

from session_gateway.config import DeliveryPolicy
from session_gateway.errors import GatewayError
from session_gateway.models import WebhookDeliveryAttempt
from session_gateway.store.records import SQLiteRecordStore
from session_gateway.webhook.dispatcher import WebhookDispatcher


@click.group()
@click.option(
    "--db", default="data/gateway.db", envvar="GATEWAY_DB_PATH",
    show_default=True, help="Gateway database path.",
)
@click.pass_context
def cli(ctx: click.Context, db: str) -> None:
    """Session gateway CLI."""
    ctx.ensure_object(dict)
    ctx.obj["db"] = db


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, type=int, show_default=True)
@click.option("--log-level", default="INFO", envvar="LOG_LEVEL", show_default=True)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, log_level: str) -> None:
    """Run the HTTP API (settings come from GATEWAY_* / WEBHOOK_* variables)."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    os.environ.setdefault("GATEWAY_DB_PATH", ctx.obj["db"])
    uvicorn.run(
        "session_gateway.api.app:create_app_from_env",
        factory=True,
        host=host,
        port=port,
        log_level=log_level.lower(),
    )


@cli.group("deliveries")
def deliveries_group() -> None:
    """Inspect and replay webhook deliveries."""


@deliveries_group.command("list")
@click.argument("webhook_id")
@click.option("--limit", default=100, type=int, show_default=True)
@click.pass_context
def deliveries_list(ctx: click.Context, webhook_id: str, limit: int) -> None:
    """Print the delivery log of a webhook as JSON."""
    store = SQLiteRecordStore(ctx.obj["db"])
    try:
        entries = store.list_delivery_log(webhook_id, limit=limit)
    finally:
        store.close()
    click.echo(json.dumps([e.model_dump(mode="json") for e in entries], indent=2))


@deliveries_group.command("replay")
@click.argument("attempt_id")
@click.pass_context
def deliveries_replay(ctx: click.Context, attempt_id: str) -> None:
    """Send a logged payload once more and record the new attempt."""
    store = SQLiteRecordStore(ctx.obj["db"])
    try:
        entry = asyncio.run(_redeliver(store, attempt_id))
    except GatewayError as exc:
        raise click.ClickException(exc.message) from exc
    finally:
        store.close()
    click.echo(entry.model_dump_json(indent=2))
    if not entry.succeeded:
        ctx.exit(1)


async def _redeliver(store: SQLiteRecordStore, attempt_id: str) -> WebhookDeliveryAttempt:
    dispatcher = WebhookDispatcher(store, policy=DeliveryPolicy())
    try:
        return await dispatcher.redeliver(attempt_id)
    finally:
        await dispatcher.aclose()
