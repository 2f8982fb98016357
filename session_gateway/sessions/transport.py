"""Transport handle interface and the raw notifications it emits.

The chat engine itself lives outside this package. A transport handle is the
per-session connection to it: it connects, runs commands, and pushes loosely
typed notifications back through the handler installed with
``set_event_handler``. ``parse_raw_event`` folds those notifications into the
closed set of dataclasses below; anything it cannot place becomes an
``UnrecognizedEvent`` that callers log and drop.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, Union

from session_gateway.models import PASS_THROUGH_EVENTS, SessionConfig


class DisconnectReason(str, Enum):
    CONNECTION_LOST = "connection_lost"
    TIMEOUT = "timeout"
    RESTART_REQUIRED = "restart_required"
    NAVIGATION = "navigation"
    LOGGED_OUT = "logged_out"
    CONFLICT = "conflict"
    BANNED = "banned"
    UNKNOWN = "unknown"

    @property
    def recoverable(self) -> bool:
        return self not in _UNRECOVERABLE

    @classmethod
    def parse(cls, raw: object) -> DisconnectReason:
        value = str(raw or "").strip().lower()
        value = _REASON_ALIASES.get(value, value)
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


_UNRECOVERABLE = frozenset({
    DisconnectReason.LOGGED_OUT,
    DisconnectReason.CONFLICT,
    DisconnectReason.BANNED,
})

_REASON_ALIASES = {
    "logout": "logged_out",
    "unpaired": "logged_out",
    "unpaired_idle": "logged_out",
    "connection_closed": "connection_lost",
    "connection_replaced": "conflict",
    "multidevice_mismatch": "conflict",
    "forbidden": "banned",
}


@dataclass(frozen=True)
class PairingArtifact:
    """What ``connect`` yields: a QR payload, a pairing code, or restored credentials."""

    qr: str | None = None
    code: str | None = None
    authenticated: bool = False

    @property
    def requires_pairing(self) -> bool:
        return not self.authenticated


# --- Raw notification variants ---


@dataclass(frozen=True)
class PairingEvent:
    artifact: PairingArtifact


@dataclass(frozen=True)
class ConnectedEvent:
    info: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AuthFailureEvent:
    message: str = ""


@dataclass(frozen=True)
class DisconnectedEvent:
    reason: DisconnectReason
    detail: str = ""


@dataclass(frozen=True)
class PresenceNotification:
    """Plain presence stanza: ``{from, type: available|unavailable, last}``."""

    sender: str
    available: bool
    last: str | None = None


@dataclass(frozen=True)
class ChatStateNotification:
    """Chat-state stanza: ``{from, participant?, <subtype media?>}``."""

    sender: str
    subtype: str
    participant: str | None = None
    is_audio: bool = False


@dataclass(frozen=True)
class MessageNotification:
    event_type: str
    chat_id: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class UnrecognizedEvent:
    kind: str
    raw: Any = None
    reason: str = ""


RawEvent = Union[
    PairingEvent,
    ConnectedEvent,
    AuthFailureEvent,
    DisconnectedEvent,
    PresenceNotification,
    ChatStateNotification,
    MessageNotification,
    UnrecognizedEvent,
]

RAW_EVENT_TYPES = (
    PairingEvent,
    ConnectedEvent,
    AuthFailureEvent,
    DisconnectedEvent,
    PresenceNotification,
    ChatStateNotification,
    MessageNotification,
    UnrecognizedEvent,
)

CHAT_STATE_SUBTYPES = frozenset({"available", "unavailable", "paused", "composing"})

RawEventHandler = Callable[[Any], None]


class TransportHandle(Protocol):
    def set_event_handler(self, handler: RawEventHandler) -> None: ...

    async def connect(self, config: SessionConfig) -> PairingArtifact: ...

    async def disconnect(self) -> None: ...

    async def logout(self) -> None: ...

    async def execute(self, op: str, args: dict[str, Any]) -> Any: ...

    async def request_pairing_code(self, phone_number: str) -> str: ...


TransportFactory = Callable[[str], TransportHandle]


def parse_raw_event(raw: object) -> RawEvent:
    """Map an engine notification onto a ``RawEvent`` variant. Never raises."""
    if isinstance(raw, RAW_EVENT_TYPES):
        return raw  # type: ignore[return-value]
    if not isinstance(raw, Mapping):
        return UnrecognizedEvent(kind=type(raw).__name__, raw=raw, reason="not a mapping")

    tag = raw.get("tag")
    if tag == "presence":
        return _parse_presence_stanza(raw)
    if tag == "chatstate":
        return _parse_chatstate_stanza(raw)

    kind = raw.get("kind")
    if kind == "pairing":
        return PairingEvent(PairingArtifact(
            qr=_opt_str(raw.get("qr")),
            code=_opt_str(raw.get("code")),
        ))
    if kind == "connected":
        info = raw.get("info")
        return ConnectedEvent(info=dict(info) if isinstance(info, Mapping) else {})
    if kind == "auth_failure":
        return AuthFailureEvent(message=str(raw.get("message", "")))
    if kind == "disconnected":
        return DisconnectedEvent(
            reason=DisconnectReason.parse(raw.get("reason")),
            detail=str(raw.get("reason", "")),
        )
    if kind == "message":
        return _parse_message(raw)

    return UnrecognizedEvent(kind=str(tag or kind or "unknown"), raw=raw, reason="unknown kind")


def _parse_presence_stanza(raw: Mapping[str, Any]) -> RawEvent:
    attrs = raw.get("attrs")
    if not isinstance(attrs, Mapping) or not attrs.get("from"):
        return UnrecognizedEvent(kind="presence", raw=raw, reason="missing sender")
    return PresenceNotification(
        sender=str(attrs["from"]),
        available=attrs.get("type") != "unavailable",
        last=_opt_str(attrs.get("last")),
    )


def _parse_chatstate_stanza(raw: Mapping[str, Any]) -> RawEvent:
    attrs = raw.get("attrs")
    if not isinstance(attrs, Mapping) or not attrs.get("from"):
        return UnrecognizedEvent(kind="chatstate", raw=raw, reason="missing sender")
    content = raw.get("content")
    first = content[0] if isinstance(content, list) and content else None
    if not isinstance(first, Mapping) or first.get("tag") not in CHAT_STATE_SUBTYPES:
        return UnrecognizedEvent(kind="chatstate", raw=raw, reason="missing or unknown subtype")
    child_attrs = first.get("attrs")
    media = child_attrs.get("media") if isinstance(child_attrs, Mapping) else None
    return ChatStateNotification(
        sender=str(attrs["from"]),
        participant=_opt_str(attrs.get("participant")),
        subtype=str(first["tag"]),
        is_audio=media == "audio",
    )


def _parse_message(raw: Mapping[str, Any]) -> RawEvent:
    event_type = raw.get("event")
    chat_id = raw.get("chat_id")
    if event_type not in PASS_THROUGH_EVENTS:
        return UnrecognizedEvent(kind="message", raw=raw, reason=f"unknown event {event_type!r}")
    if not chat_id:
        return UnrecognizedEvent(kind="message", raw=raw, reason="missing chat_id")
    data = raw.get("data")
    return MessageNotification(
        event_type=str(event_type),
        chat_id=str(chat_id),
        data=dict(data) if isinstance(data, Mapping) else {},
    )


def _opt_str(value: object) -> str | None:
    if value is None or value == "":
        return None
    return str(value)
