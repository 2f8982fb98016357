"""Shared Pydantic data models for session-gateway."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

# --- Enums ---


class SessionStatus(str, Enum):
    CREATED = "CREATED"
    STARTING = "STARTING"
    SCAN_QR_CODE = "SCAN_QR_CODE"
    CONNECTED = "CONNECTED"
    RECONNECTING = "RECONNECTING"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


class PresenceState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    TYPING = "typing"
    RECORDING = "recording"
    PAUSED = "paused"


class DeliveryOutcome(str, Enum):
    SUCCESS = "success"
    TRANSIENT_FAILURE = "transient_failure"
    PERMANENT_FAILURE = "permanent_failure"
    INVALID_CONFIG = "invalid_config"


class CommandOp(str, Enum):
    """Operations the command surface forwards to the transport."""

    SEND_TEXT = "send_text"
    SEND_REACTION = "send_reaction"
    SET_PRESENCE = "set_presence"
    SUBSCRIBE_PRESENCE = "subscribe_presence"
    MARK_SEEN = "mark_seen"


# --- Event taxonomy ---

EVENT_SESSION_STATUS = "session.status"
EVENT_PRESENCE_UPDATE = "presence.update"
EVENT_TEST = "test"

PASS_THROUGH_EVENTS = frozenset({
    "message",
    "message.any",
    "message.ack",
    "message.reaction",
    "message.revoked",
    "message.edited",
    "group.join",
    "group.leave",
    "group.update",
    "call.received",
    "label.upsert",
    "contact.update",
    "chat.archive",
    "poll.vote",
})

ALL_EVENTS = frozenset({EVENT_SESSION_STATUS, EVENT_PRESENCE_UPDATE}) | PASS_THROUGH_EVENTS

WILDCARD = "*"


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _new_id() -> str:
    return str(uuid.uuid4())


# --- Session Models ---


class ClientConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    device_name: str | None = None
    browser_name: str | None = None


class ProxyConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    server: str | None = None
    username: str | None = None
    password: str | None = None


class IgnoreConfig(BaseModel):
    """Categories of chats whose message events are not forwarded."""

    model_config = ConfigDict(frozen=True)

    status: bool = False
    groups: bool = False
    channels: bool = False
    broadcast: bool = False


class EngineStoreConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = True
    full_sync: bool = False
    mark_online: bool = True


class SessionConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    client: ClientConfig = Field(default_factory=ClientConfig)
    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    ignore: IgnoreConfig = Field(default_factory=IgnoreConfig)
    store: EngineStoreConfig = Field(default_factory=EngineStoreConfig)
    metadata: dict[str, Any] = Field(default_factory=dict)
    debug: bool = False


class SessionRecord(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    name: str = Field(min_length=1, max_length=100)
    status: SessionStatus = SessionStatus.CREATED
    config: SessionConfig = Field(default_factory=SessionConfig)
    created_at: str = Field(default_factory=_now_iso)
    updated_at: str = Field(default_factory=_now_iso)
    last_connected_at: str | None = None
    active: bool = True


# --- Webhook Models ---


class Webhook(BaseModel):
    id: str = Field(default_factory=_new_id)
    session_id: str
    url: str
    events: frozenset[str] = frozenset()
    secret: str | None = None
    active: bool = True
    max_attempts: int = Field(default=3, ge=1, le=20)
    backoff_base_seconds: float = Field(default=1.0, ge=0)
    timeout_seconds: float = Field(default=10.0, gt=0)
    custom_headers: dict[str, str] = Field(default_factory=dict)
    created_at: str = Field(default_factory=_now_iso)

    def subscribes_to(self, event_type: str) -> bool:
        """Empty subscription set or the wildcard means every event."""
        if not self.events or WILDCARD in self.events:
            return True
        return event_type in self.events


class WebhookDeliveryAttempt(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    webhook_id: str
    delivery_id: str
    event_type: str
    payload: dict[str, Any]
    attempt: int = Field(ge=1)
    outcome: DeliveryOutcome
    status_code: int | None = None
    error: str | None = None
    duration_ms: int = Field(default=0, ge=0)
    timestamp: str = Field(default_factory=_now_iso)

    @property
    def succeeded(self) -> bool:
        return self.outcome == DeliveryOutcome.SUCCESS


# --- Presence Models ---


class ParticipantPresence(BaseModel):
    model_config = ConfigDict(frozen=True)

    participant: str
    last_known_presence: PresenceState
    last_seen: int | None = None


class PresenceRecord(BaseModel):
    chat_id: str
    presences: list[ParticipantPresence] = Field(default_factory=list)


# --- Event Models ---


class Event(BaseModel):
    """Immutable notification handed from producers to the event bus."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_id)
    session_id: str
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    occurred_at: str = Field(default_factory=_now_iso)
    sequence: int = 0
