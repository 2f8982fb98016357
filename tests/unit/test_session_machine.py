"""Tests for the session state machine."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest
from conftest import EventRecorder, FakeClock, FakeEngine, settle

from session_gateway.config import ReconnectPolicy
from session_gateway.errors import (
    ConflictError,
    InvalidStateError,
    SessionNotConnectedError,
    TransportError,
    ValidationError,
)
from session_gateway.events.bus import EventBus
from session_gateway.models import (
    EVENT_PRESENCE_UPDATE,
    EVENT_SESSION_STATUS,
    IgnoreConfig,
    SessionConfig,
    SessionRecord,
    SessionStatus,
)
from session_gateway.sessions.machine import SessionStateMachine
from session_gateway.sessions.transport import PairingArtifact


def _make_machine(
    engine: FakeEngine,
    clock: FakeClock,
    record_store: Any = None,
    **kwargs: Any,
) -> tuple[SessionStateMachine, EventBus, EventRecorder]:
    bus = EventBus()
    recorder = EventRecorder()
    bus.subscribe(recorder)
    record = SessionRecord(
        owner_id="owner-1",
        name=kwargs.pop("name", "s1"),
        config=kwargs.pop("config", SessionConfig()),
    )
    if record_store is not None:
        record_store.create_session(record)
    defaults: dict[str, Any] = {
        "reconnect": ReconnectPolicy(base_seconds=2, cap_seconds=60, max_attempts=3),
        "pairing_timeout_seconds": 120,
    }
    defaults.update(kwargs)
    machine = SessionStateMachine(
        record,
        transport_factory=engine,
        bus=bus,
        record_store=record_store,
        clock=clock,
        **defaults,
    )
    return machine, bus, recorder


async def _connect(machine: SessionStateMachine, engine: FakeEngine) -> None:
    await machine.start()
    engine.latest(machine.id).emit({"kind": "connected", "info": {"pushname": "Me"}})
    assert machine.get_status() == SessionStatus.CONNECTED


class TestStartAndPairing:
    @pytest.mark.asyncio
    async def test_start_emits_starting_then_scan_qr_code(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()

        status = await machine.start()
        await bus.join()

        assert status == SessionStatus.SCAN_QR_CODE
        assert recorder.statuses() == ["STARTING", "SCAN_QR_CODE"]
        assert machine.pairing_artifact.qr == "qr-payload"
        await bus.stop()

    @pytest.mark.asyncio
    async def test_pairing_completes_to_connected(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()

        await _connect(machine, engine)
        await bus.join()

        assert recorder.statuses() == ["STARTING", "SCAN_QR_CODE", "CONNECTED"]
        assert machine.pairing_artifact is None
        assert machine.snapshot()["profile"] == {"pushname": "Me"}
        await bus.stop()

    @pytest.mark.asyncio
    async def test_restored_credentials_connect_without_pairing(self, clock):
        engine = FakeEngine(PairingArtifact(authenticated=True))
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()

        assert await machine.start() == SessionStatus.CONNECTED
        await bus.join()

        assert recorder.statuses() == ["STARTING", "CONNECTED"]
        await bus.stop()

    @pytest.mark.asyncio
    async def test_status_events_carry_previous_and_sequence(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()

        await _connect(machine, engine)
        await bus.join()

        payloads = [e.payload for e in recorder.of_type(EVENT_SESSION_STATUS)]
        assert [p["previous"] for p in payloads] == ["CREATED", "STARTING", "SCAN_QR_CODE"]
        assert [p["sequence"] for p in payloads] == [1, 2, 3]
        await bus.stop()

    @pytest.mark.asyncio
    async def test_pairing_timeout_fails_once(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()
        await machine.start()

        await clock.advance(119)
        assert machine.get_status() == SessionStatus.SCAN_QR_CODE

        await clock.advance(1)
        await clock.advance(600)
        await bus.join()

        assert machine.get_status() == SessionStatus.FAILED
        assert recorder.statuses() == ["STARTING", "SCAN_QR_CODE", "FAILED"]
        failed = recorder.of_type(EVENT_SESSION_STATUS)[-1]
        assert failed.payload["reason"] == "pairing_timeout"
        assert engine.latest().closed
        assert not machine.has_transport
        await bus.stop()

    @pytest.mark.asyncio
    async def test_pairing_timeout_cancelled_by_connect(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()

        await _connect(machine, engine)
        await clock.advance(500)
        await bus.join()

        assert machine.get_status() == SessionStatus.CONNECTED
        assert "FAILED" not in recorder.statuses()
        await bus.stop()

    @pytest.mark.asyncio
    async def test_start_while_active_conflicts(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await machine.start()

        with pytest.raises(ConflictError):
            await machine.start()
        assert len(engine.handles) == 1

    @pytest.mark.asyncio
    async def test_connect_failure_fails_session(self, engine, clock):
        engine.connect_errors.append(RuntimeError("engine down"))
        machine, _, _ = _make_machine(engine, clock)

        with pytest.raises(TransportError):
            await machine.start()
        await settle()

        assert machine.get_status() == SessionStatus.FAILED
        assert engine.latest().closed

    @pytest.mark.asyncio
    async def test_disconnect_during_failed_connect(self, engine, clock):
        engine.connect_events.append({"kind": "disconnected", "reason": "connection_lost"})
        engine.connect_errors.append(ConnectionError("reset"))
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()

        with pytest.raises(TransportError):
            await machine.start()
        await settle()
        await bus.join()

        assert machine.get_status() == SessionStatus.FAILED
        assert recorder.statuses() == ["STARTING", "FAILED"]
        assert engine.latest().closed
        await bus.stop()

    @pytest.mark.asyncio
    async def test_start_from_failed_requires_restart(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await machine.start()
        await clock.advance(120)
        assert machine.get_status() == SessionStatus.FAILED

        with pytest.raises(InvalidStateError):
            await machine.start()

        assert await machine.restart() == SessionStatus.SCAN_QR_CODE

    @pytest.mark.asyncio
    async def test_request_pairing_code_formats_code(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await machine.start()

        code = await machine.request_pairing_code("+55 (11) 999-000")

        assert code == "ABCD-1234"
        assert engine.latest().pairing_requests == ["5511999000"]

    @pytest.mark.asyncio
    async def test_request_pairing_code_outside_pairing(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        with pytest.raises(InvalidStateError):
            await machine.request_pairing_code("5511999")

        await machine.start()
        with pytest.raises(ValidationError):
            await machine.request_pairing_code("no digits")


class TestCommands:
    @pytest.mark.asyncio
    async def test_command_before_pairing_not_connected(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await machine.start()

        with pytest.raises(SessionNotConnectedError):
            await machine.issue_command("send_text", {"chat_id": "1@c.us", "text": "hi"})
        assert engine.latest().executed == []

    @pytest.mark.asyncio
    async def test_concurrent_commands_run_in_fifo_order(self, engine, clock):
        engine.execute_yields = 3
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)

        results = await asyncio.gather(*(
            machine.issue_command("send_text", {"i": i}) for i in range(10)
        ))

        transport = engine.latest()
        assert [args["i"] for _, args in transport.executed] == list(range(10))
        assert [r["seq"] for r in results] == list(range(1, 11))
        assert engine.max_active == 1

    @pytest.mark.asyncio
    async def test_command_error_reaches_only_its_caller(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)

        engine.execute_error = RuntimeError("rejected")
        with pytest.raises(RuntimeError, match="rejected"):
            await machine.issue_command("send_text", {"i": 1})

        engine.execute_error = None
        result = await machine.issue_command("send_text", {"i": 2})
        assert result["op"] == "send_text"
        assert machine.get_status() == SessionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_logout_fails_queued_commands(self, engine, clock):
        engine.execute_yields = 10
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)

        tasks = [
            asyncio.create_task(machine.issue_command("send_text", {"i": i}))
            for i in range(3)
        ]
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        await machine.logout()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, SessionNotConnectedError) for r in results)
        assert machine.get_status() == SessionStatus.STOPPED
        assert engine.latest().logged_out
        assert engine.latest().closed

    @pytest.mark.asyncio
    async def test_disconnect_fails_queued_commands(self, engine, clock):
        engine.execute_yields = 10
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)

        tasks = [
            asyncio.create_task(machine.issue_command("send_text", {"i": i}))
            for i in range(3)
        ]
        await asyncio.sleep(0)
        engine.latest().emit({"kind": "disconnected", "reason": "connection_lost"})
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, SessionNotConnectedError) for r in results)
        assert machine.get_status() == SessionStatus.RECONNECTING


class TestReconnect:
    @pytest.mark.asyncio
    async def test_recoverable_disconnect_reconnects(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()
        await _connect(machine, engine)
        engine.artifact = PairingArtifact(authenticated=True)

        engine.latest().emit({"kind": "disconnected", "reason": "connection_lost"})
        assert machine.get_status() == SessionStatus.RECONNECTING

        await clock.advance(2)
        await bus.join()

        assert machine.get_status() == SessionStatus.CONNECTED
        assert recorder.statuses()[-2:] == ["RECONNECTING", "CONNECTED"]
        assert len(engine.handles) == 1
        assert engine.latest().connect_calls == 2
        assert clock.sleeps[-1] == 2
        await bus.stop()

    @pytest.mark.asyncio
    async def test_reconnect_backs_off_then_fails(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()
        await _connect(machine, engine)
        engine.connect_errors.extend(ConnectionError("down") for _ in range(3))

        engine.latest().emit({"kind": "disconnected", "reason": "timeout"})
        await clock.advance(2)
        await clock.advance(4)
        assert machine.get_status() == SessionStatus.RECONNECTING
        await clock.advance(8)
        await bus.join()

        assert machine.get_status() == SessionStatus.FAILED
        assert clock.sleeps[-3:] == [2, 4, 8]
        assert recorder.of_type(EVENT_SESSION_STATUS)[-1].payload["reason"] == "reconnect_exhausted"
        assert engine.latest().closed
        await bus.stop()

    @pytest.mark.asyncio
    async def test_logged_out_disconnect_fails_without_retry(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)

        engine.latest().emit({"kind": "disconnected", "reason": "logout"})
        await settle()

        assert machine.get_status() == SessionStatus.FAILED
        assert clock.pending == 0
        assert engine.latest().closed

    @pytest.mark.asyncio
    async def test_disconnect_while_pairing_fails(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await machine.start()

        engine.latest().emit({"kind": "disconnected", "reason": "connection_lost"})
        await settle()

        assert machine.get_status() == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_logout_during_reconnect_stops_retrying(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)
        engine.latest().emit({"kind": "disconnected", "reason": "connection_lost"})

        await machine.logout()
        await clock.advance(100)

        assert machine.get_status() == SessionStatus.STOPPED
        assert engine.latest().connect_calls == 1


class TestTeardown:
    @pytest.mark.asyncio
    async def test_restart_emits_stopped_then_starting(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()
        await _connect(machine, engine)

        status = await machine.restart()
        await bus.join()

        assert status == SessionStatus.SCAN_QR_CODE
        assert recorder.statuses()[-4:] == ["CONNECTED", "STOPPED", "STARTING", "SCAN_QR_CODE"]
        assert engine.handles[0].closed
        assert not engine.handles[0].logged_out
        assert engine.live_count(machine.id) == 1
        assert engine.max_live == 1
        await bus.stop()

    @pytest.mark.asyncio
    async def test_restart_while_restarting_conflicts(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)

        task = asyncio.create_task(machine.restart())
        await asyncio.sleep(0)

        with pytest.raises(ConflictError):
            await machine.restart()
        with pytest.raises(ConflictError):
            await machine.start()
        await task
        assert engine.max_live == 1

    @pytest.mark.asyncio
    async def test_events_from_released_transport_ignored(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)
        old = engine.latest()

        await machine.restart()
        old.emit({"kind": "connected"})

        assert machine.get_status() == SessionStatus.SCAN_QR_CODE

    @pytest.mark.asyncio
    async def test_restart_after_failure_keeps_new_transport(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)
        engine.latest().emit({"kind": "auth_failure", "message": "revoked"})

        status = await machine.restart()
        await settle()

        assert status == SessionStatus.SCAN_QR_CODE
        assert machine.get_status() == SessionStatus.SCAN_QR_CODE
        assert machine.has_transport
        assert engine.handles[0].closed
        assert not engine.latest().closed
        assert engine.live_count(machine.id) == 1

    @pytest.mark.asyncio
    async def test_logout_after_failure_clears_credentials(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)
        engine.latest().emit({"kind": "disconnected", "reason": "banned"})
        await settle()
        assert machine.get_status() == SessionStatus.FAILED

        assert await machine.logout() == SessionStatus.STOPPED
        assert engine.latest().logged_out
        assert engine.live_count(machine.id) == 0

    @pytest.mark.asyncio
    async def test_logout_from_created_is_noop(self, engine, clock):
        machine, _, recorder = _make_machine(engine, clock)
        assert await machine.logout() == SessionStatus.CREATED
        assert engine.handles == []

    @pytest.mark.asyncio
    async def test_logout_clears_presence(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await _connect(machine, engine)
        engine.latest().emit({"tag": "presence", "attrs": {"from": "5511@s.whatsapp.net"}})
        assert len(machine.presence) == 1

        await machine.logout()
        assert len(machine.presence) == 0

    @pytest.mark.asyncio
    async def test_status_persisted(self, engine, clock, record_store):
        machine, _, _ = _make_machine(engine, clock, record_store=record_store)
        await _connect(machine, engine)

        stored = record_store.load_session(machine.id)
        assert stored.status == SessionStatus.CONNECTED
        assert stored.last_connected_at is not None


class TestEngineEvents:
    @pytest.mark.asyncio
    async def test_presence_published_as_merged_record(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()
        await _connect(machine, engine)

        engine.latest().emit({
            "tag": "presence",
            "attrs": {"from": "5511@s.whatsapp.net", "type": "available", "last": "deny"},
        })
        await bus.join()

        [event] = recorder.of_type(EVENT_PRESENCE_UPDATE)
        assert event.payload["chat_id"] == "5511@c.us"
        assert event.payload["presences"] == [
            {"participant": "5511@c.us", "last_known_presence": "online", "last_seen": None},
        ]
        await bus.stop()

    @pytest.mark.asyncio
    async def test_message_chat_id_normalized(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()
        await _connect(machine, engine)

        engine.latest().emit({
            "kind": "message",
            "event": "message",
            "chat_id": "5511999:3@s.whatsapp.net",
            "data": {"body": "hello"},
        })
        await bus.join()

        [event] = recorder.of_type("message")
        assert event.payload == {"body": "hello", "chat_id": "5511999@c.us"}
        await bus.stop()

    @pytest.mark.asyncio
    async def test_ignored_chat_kinds_dropped(self, engine, clock):
        config = SessionConfig(ignore=IgnoreConfig(groups=True, status=True))
        machine, bus, recorder = _make_machine(engine, clock, config=config)
        bus.start()
        await _connect(machine, engine)
        transport = engine.latest()

        transport.emit({"kind": "message", "event": "message", "chat_id": "120363@g.us"})
        transport.emit({"kind": "message", "event": "message", "chat_id": "status@broadcast"})
        transport.emit({"kind": "message", "event": "message", "chat_id": "5511@c.us"})
        await bus.join()

        assert [e.payload["chat_id"] for e in recorder.of_type("message")] == ["5511@c.us"]
        await bus.stop()

    @pytest.mark.asyncio
    async def test_unrecognized_events_dropped(self, engine, clock):
        machine, bus, recorder = _make_machine(engine, clock)
        bus.start()
        await _connect(machine, engine)
        before = len(recorder.events)

        engine.latest().emit({"kind": "mystery"})
        engine.latest().emit("not even a mapping")
        engine.latest().emit({"kind": "message", "event": "not.a.type", "chat_id": "1@c.us"})
        await bus.join()

        assert len(recorder.events) == before
        assert machine.get_status() == SessionStatus.CONNECTED
        await bus.stop()

    @pytest.mark.asyncio
    async def test_auth_failure_while_pairing(self, engine, clock):
        machine, _, _ = _make_machine(engine, clock)
        await machine.start()

        engine.latest().emit({"kind": "auth_failure", "message": "bad creds"})
        await settle()

        assert machine.get_status() == SessionStatus.FAILED
        assert engine.latest().closed
