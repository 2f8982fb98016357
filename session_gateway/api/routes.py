"""Session, command, presence and webhook endpoints under ``/api/sessions``."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from session_gateway.errors import InvalidStateError, NotFoundError, ValidationError
from session_gateway.models import (
    ALL_EVENTS,
    EVENT_TEST,
    WILDCARD,
    CommandOp,
    PresenceState,
    SessionConfig,
    Webhook,
)
from session_gateway.sessions.machine import PAIRING_STATUSES, SessionStateMachine
from session_gateway.sessions.registry import SessionRegistry
from session_gateway.store.records import RecordStore
from session_gateway.webhook.delivery import validate_webhook_url
from session_gateway.webhook.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


# --- Request bodies ---


class CreateSessionBody(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    config: SessionConfig = Field(default_factory=SessionConfig)
    start: bool = False


class PairingCodeBody(BaseModel):
    phone_number: str = Field(min_length=1)


class SendTextBody(BaseModel):
    chat_id: str
    text: str = Field(min_length=1)
    reply_to: str | None = None


class SendReactionBody(BaseModel):
    chat_id: str
    message_id: str
    reaction: str = ""


class MarkSeenBody(BaseModel):
    chat_id: str
    message_ids: list[str] = Field(default_factory=list)


class SetPresenceBody(BaseModel):
    presence: PresenceState
    chat_id: str | None = None


class WebhookBody(BaseModel):
    url: str
    events: list[str] = Field(default_factory=list)
    secret: str | None = None
    active: bool = True
    max_attempts: int | None = Field(default=None, ge=1, le=20)
    backoff_base_seconds: float | None = Field(default=None, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    headers: dict[str, str] = Field(default_factory=dict)


class WebhookPatchBody(BaseModel):
    url: str | None = None
    events: list[str] | None = None
    secret: str | None = None
    active: bool | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=20)
    backoff_base_seconds: float | None = Field(default=None, ge=0)
    timeout_seconds: float | None = Field(default=None, gt=0)
    headers: dict[str, str] | None = None


_SUBSCRIBABLE = ALL_EVENTS | {WILDCARD, EVENT_TEST}


def create_sessions_router(
    registry: SessionRegistry,
    record_store: RecordStore,
    dispatcher: WebhookDispatcher,
) -> APIRouter:
    """Create the session API router."""
    router = APIRouter(prefix="/api/sessions")

    def session_for(request: Request, session_id: str) -> SessionStateMachine:
        return registry.get(session_id, owner_id=request.state.owner_id)

    def webhook_for(request: Request, session_id: str, webhook_id: str) -> Webhook:
        session = session_for(request, session_id)
        webhook = record_store.get_webhook(webhook_id)
        if webhook is None or webhook.session_id != session.id:
            raise NotFoundError(f"Webhook {webhook_id} not found")
        return webhook

    # --- Sessions ---

    @router.post("")
    async def create_session(body: CreateSessionBody, request: Request) -> JSONResponse:
        machine = await registry.create(
            request.state.owner_id, body.name, body.config, start=body.start,
        )
        return JSONResponse(machine.snapshot(), status_code=201)

    @router.get("")
    async def list_sessions(request: Request) -> JSONResponse:
        return JSONResponse([m.snapshot() for m in registry.list(request.state.owner_id)])

    @router.get("/{session_id}")
    async def get_session(session_id: str, request: Request) -> JSONResponse:
        return JSONResponse(session_for(request, session_id).snapshot())

    @router.delete("/{session_id}")
    async def delete_session(session_id: str, request: Request) -> Response:
        session_for(request, session_id)
        for webhook in record_store.list_webhooks(session_id, active_only=False):
            dispatcher.cancel_webhook(webhook.id)
        await registry.remove(session_id, owner_id=request.state.owner_id)
        return Response(status_code=204)

    @router.post("/{session_id}/start")
    async def start_session(session_id: str, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        await machine.start()
        return JSONResponse(machine.snapshot())

    @router.post("/{session_id}/restart")
    async def restart_session(session_id: str, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        await machine.restart()
        return JSONResponse(machine.snapshot())

    @router.post("/{session_id}/logout")
    async def logout_session(session_id: str, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        await machine.logout()
        return JSONResponse(machine.snapshot())

    # --- Pairing ---

    @router.get("/{session_id}/qr")
    async def get_qr(session_id: str, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        artifact = machine.pairing_artifact
        if machine.get_status() not in PAIRING_STATUSES or artifact is None:
            raise InvalidStateError(
                f"No pairing in progress (status: {machine.get_status().value})"
            )
        return JSONResponse({
            "status": machine.get_status().value,
            "qr": artifact.qr,
            "code": artifact.code,
        })

    @router.post("/{session_id}/pairing-code")
    async def pairing_code(session_id: str, body: PairingCodeBody, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        code = await machine.request_pairing_code(body.phone_number)
        return JSONResponse({"code": code})

    # --- Commands ---

    @router.post("/{session_id}/messages/text")
    async def send_text(session_id: str, body: SendTextBody, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        result = await machine.issue_command(CommandOp.SEND_TEXT, body.model_dump())
        return JSONResponse({"result": result})

    @router.post("/{session_id}/messages/reaction")
    async def send_reaction(session_id: str, body: SendReactionBody, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        result = await machine.issue_command(CommandOp.SEND_REACTION, body.model_dump())
        return JSONResponse({"result": result})

    @router.post("/{session_id}/messages/seen")
    async def mark_seen(session_id: str, body: MarkSeenBody, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        result = await machine.issue_command(CommandOp.MARK_SEEN, body.model_dump())
        return JSONResponse({"result": result})

    # --- Presence ---

    @router.post("/{session_id}/presence")
    async def set_presence(session_id: str, body: SetPresenceBody, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        result = await machine.issue_command(CommandOp.SET_PRESENCE, body.model_dump(mode="json"))
        return JSONResponse({"result": result})

    @router.get("/{session_id}/presence")
    async def list_presence(session_id: str, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        return JSONResponse([r.model_dump(mode="json") for r in machine.presence.all()])

    @router.get("/{session_id}/presence/{chat_id}")
    async def get_presence(session_id: str, chat_id: str, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        return JSONResponse(machine.presence.get(chat_id).model_dump(mode="json"))

    @router.post("/{session_id}/presence/{chat_id}/subscribe")
    async def subscribe_presence(session_id: str, chat_id: str, request: Request) -> JSONResponse:
        machine = session_for(request, session_id)
        await machine.issue_command(CommandOp.SUBSCRIBE_PRESENCE, {"chat_id": chat_id})
        return JSONResponse(machine.presence.get(chat_id).model_dump(mode="json"))

    # --- Webhooks ---

    @router.post("/{session_id}/webhooks")
    async def create_webhook(session_id: str, body: WebhookBody, request: Request) -> JSONResponse:
        session = session_for(request, session_id)
        policy = dispatcher.policy
        webhook = Webhook(
            session_id=session.id,
            url=validate_webhook_url(body.url),
            events=_validate_events(body.events),
            secret=body.secret,
            active=body.active,
            max_attempts=body.max_attempts or policy.default_max_attempts,
            backoff_base_seconds=(
                body.backoff_base_seconds
                if body.backoff_base_seconds is not None
                else policy.default_backoff_base_seconds
            ),
            timeout_seconds=body.timeout_seconds or policy.default_timeout_seconds,
            custom_headers=body.headers,
        )
        record_store.create_webhook(webhook)
        logger.info("Created webhook %s for session %s", webhook.id, session.id)
        return JSONResponse(_webhook_view(webhook), status_code=201)

    @router.get("/{session_id}/webhooks")
    async def list_webhooks(session_id: str, request: Request) -> JSONResponse:
        session = session_for(request, session_id)
        webhooks = record_store.list_webhooks(session.id, active_only=False)
        return JSONResponse([_webhook_view(w) for w in webhooks])

    @router.get("/{session_id}/webhooks/{webhook_id}")
    async def get_webhook(session_id: str, webhook_id: str, request: Request) -> JSONResponse:
        return JSONResponse(_webhook_view(webhook_for(request, session_id, webhook_id)))

    @router.patch("/{session_id}/webhooks/{webhook_id}")
    async def update_webhook(
        session_id: str, webhook_id: str, body: WebhookPatchBody, request: Request,
    ) -> JSONResponse:
        webhook = webhook_for(request, session_id, webhook_id)
        changes: dict[str, Any] = body.model_dump(exclude_unset=True)
        if "url" in changes:
            validate_webhook_url(changes["url"])
        if "events" in changes:
            changes["events"] = _validate_events(changes["events"] or [])
        if "headers" in changes:
            changes["custom_headers"] = changes.pop("headers") or {}
        try:
            updated = Webhook.model_validate({**webhook.model_dump(), **changes})
        except PydanticValidationError as exc:
            raise ValidationError(_describe_errors(exc)) from exc
        record_store.update_webhook(updated)
        if not updated.active:
            dispatcher.cancel_webhook(updated.id)
        return JSONResponse(_webhook_view(updated))

    @router.delete("/{session_id}/webhooks/{webhook_id}")
    async def delete_webhook(session_id: str, webhook_id: str, request: Request) -> Response:
        webhook = webhook_for(request, session_id, webhook_id)
        record_store.delete_webhook(webhook.id)
        dispatcher.cancel_webhook(webhook.id)
        logger.info("Deleted webhook %s", webhook.id)
        return Response(status_code=204)

    @router.get("/{session_id}/webhooks/{webhook_id}/deliveries")
    async def list_deliveries(
        session_id: str,
        webhook_id: str,
        request: Request,
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> JSONResponse:
        webhook = webhook_for(request, session_id, webhook_id)
        entries = record_store.list_delivery_log(webhook.id, limit=limit)
        return JSONResponse([e.model_dump(mode="json") for e in entries])

    @router.post("/{session_id}/webhooks/{webhook_id}/test")
    async def test_webhook(session_id: str, webhook_id: str, request: Request) -> JSONResponse:
        webhook = webhook_for(request, session_id, webhook_id)
        result = await dispatcher.send_test(webhook)
        return JSONResponse({
            "success": result.succeeded,
            "outcome": result.outcome.value,
            "status_code": result.status_code,
            "error": result.error,
            "duration_ms": result.duration_ms,
        })

    @router.post("/{session_id}/webhooks/{webhook_id}/deliveries/{attempt_id}/replay")
    async def replay_delivery(
        session_id: str, webhook_id: str, attempt_id: str, request: Request,
    ) -> JSONResponse:
        webhook = webhook_for(request, session_id, webhook_id)
        entry = record_store.get_delivery_attempt(attempt_id)
        if entry is None or entry.webhook_id != webhook.id:
            raise NotFoundError(f"Delivery attempt {attempt_id} not found")
        delivery = await dispatcher.replay(attempt_id)
        return JSONResponse({"delivery_id": delivery.delivery_id}, status_code=202)

    return router


def _validate_events(events: list[str]) -> frozenset[str]:
    unknown = sorted(set(events) - _SUBSCRIBABLE)
    if unknown:
        raise ValidationError(f"Unknown event types: {', '.join(unknown)}")
    return frozenset(events)


def _webhook_view(webhook: Webhook) -> dict[str, Any]:
    data = webhook.model_dump(mode="json", exclude={"secret"})
    data["events"] = sorted(webhook.events)
    data["has_secret"] = bool(webhook.secret)
    return data


def _describe_errors(exc: PydanticValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    )
