"""Tests for folding raw engine notifications into typed events."""

from __future__ import annotations

from session_gateway.sessions.transport import (
    AuthFailureEvent,
    ChatStateNotification,
    ConnectedEvent,
    DisconnectedEvent,
    DisconnectReason,
    MessageNotification,
    PairingEvent,
    PresenceNotification,
    UnrecognizedEvent,
    parse_raw_event,
)


class TestStanzas:
    def test_presence(self):
        event = parse_raw_event({
            "tag": "presence",
            "attrs": {"from": "1@c.us", "type": "unavailable", "last": "1700"},
        })
        assert event == PresenceNotification(sender="1@c.us", available=False, last="1700")

    def test_chat_state_with_audio(self):
        event = parse_raw_event({
            "tag": "chatstate",
            "attrs": {"from": "1-2@g.us", "participant": "3@c.us"},
            "content": [{"tag": "composing", "attrs": {"media": "audio"}}],
        })
        assert event == ChatStateNotification(
            sender="1-2@g.us", subtype="composing", participant="3@c.us", is_audio=True,
        )

    def test_chat_state_unknown_subtype(self):
        event = parse_raw_event({
            "tag": "chatstate",
            "attrs": {"from": "1@c.us"},
            "content": [{"tag": "dancing"}],
        })
        assert isinstance(event, UnrecognizedEvent)


class TestLifecycleKinds:
    def test_pairing(self):
        event = parse_raw_event({"kind": "pairing", "qr": "data", "code": ""})
        assert isinstance(event, PairingEvent)
        assert event.artifact.qr == "data"
        assert event.artifact.code is None
        assert event.artifact.requires_pairing

    def test_connected(self):
        assert parse_raw_event({"kind": "connected", "info": {"wid": "1"}}) == ConnectedEvent({"wid": "1"})

    def test_auth_failure(self):
        assert parse_raw_event({"kind": "auth_failure", "message": "x"}) == AuthFailureEvent("x")

    def test_disconnected_reason_aliases(self):
        event = parse_raw_event({"kind": "disconnected", "reason": "UNPAIRED"})
        assert isinstance(event, DisconnectedEvent)
        assert event.reason == DisconnectReason.LOGGED_OUT
        assert not event.reason.recoverable

    def test_unknown_reason_is_recoverable(self):
        reason = DisconnectReason.parse("solar flare")
        assert reason == DisconnectReason.UNKNOWN
        assert reason.recoverable


class TestMessages:
    def test_message(self):
        event = parse_raw_event({
            "kind": "message", "event": "message.ack", "chat_id": "1@c.us", "data": {"ack": 3},
        })
        assert event == MessageNotification("message.ack", "1@c.us", {"ack": 3})

    def test_unknown_event_type(self):
        event = parse_raw_event({"kind": "message", "event": "message.teleport", "chat_id": "1@c.us"})
        assert isinstance(event, UnrecognizedEvent)

    def test_missing_chat_id(self):
        assert isinstance(parse_raw_event({"kind": "message", "event": "message"}), UnrecognizedEvent)


def test_non_mapping_never_raises():
    for raw in (None, 42, "text", ["list"], object()):
        assert isinstance(parse_raw_event(raw), UnrecognizedEvent)


def test_typed_events_pass_through():
    event = ConnectedEvent()
    assert parse_raw_event(event) is event
