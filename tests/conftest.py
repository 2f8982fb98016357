"""Shared test fixtures for session-gateway."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest

from session_gateway.models import EVENT_SESSION_STATUS, Event, SessionConfig
from session_gateway.sessions.transport import PairingArtifact
from session_gateway.store.records import SQLiteRecordStore


async def settle(rounds: int = 50) -> None:
    """Let pending tasks run until the loop goes quiet."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Clock whose sleeps only finish when the test advances time."""

    def __init__(self, start: float = 1_000.0) -> None:
        self._now = start
        self._sleepers: list[tuple[float, asyncio.Future[None]]] = []
        self.sleeps: list[float] = []

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._sleepers.append((self._now + seconds, future))
        await future

    @property
    def pending(self) -> int:
        return sum(1 for _, f in self._sleepers if not f.done())

    async def advance(self, seconds: float) -> None:
        await settle()
        self._now += seconds
        due = [(t, f) for t, f in self._sleepers if t <= self._now]
        self._sleepers = [(t, f) for t, f in self._sleepers if t > self._now]
        for _, future in due:
            if not future.done():
                future.set_result(None)
        await settle()


class ImmediateClock:
    """Clock whose sleeps return at once but are recorded."""

    def __init__(self) -> None:
        self.sleeps: list[float] = []

    def now(self) -> float:
        return 0.0

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)


class FakeTransport:
    def __init__(self, engine: FakeEngine, session_id: str) -> None:
        self.engine = engine
        self.session_id = session_id
        self.handler: Any = None
        self.closed = False
        self.logged_out = False
        self.connect_calls = 0
        self.executed: list[tuple[str, dict[str, Any]]] = []
        self.pairing_requests: list[str] = []

    def set_event_handler(self, handler: Any) -> None:
        self.handler = handler

    async def connect(self, config: SessionConfig) -> PairingArtifact:
        self.connect_calls += 1
        await asyncio.sleep(0)
        events, self.engine.connect_events = self.engine.connect_events, []
        for raw in events:
            self.handler(raw)
        if self.engine.connect_errors:
            raise self.engine.connect_errors.pop(0)
        return self.engine.artifact

    async def disconnect(self) -> None:
        self.closed = True

    async def logout(self) -> None:
        self.logged_out = True

    async def execute(self, op: str, args: dict[str, Any]) -> Any:
        self.executed.append((op, args))
        self.engine.active += 1
        self.engine.max_active = max(self.engine.max_active, self.engine.active)
        try:
            for _ in range(self.engine.execute_yields):
                await asyncio.sleep(0)
            if self.engine.execute_error is not None:
                raise self.engine.execute_error
            return {"op": op, "seq": len(self.executed)}
        finally:
            self.engine.active -= 1

    async def request_pairing_code(self, phone_number: str) -> str:
        self.pairing_requests.append(phone_number)
        return "ABCD1234"

    def emit(self, raw: Any) -> None:
        self.handler(raw)


class FakeEngine:
    """Transport factory that tracks every handle it hands out."""

    def __init__(self, artifact: PairingArtifact | None = None) -> None:
        self.artifact = artifact or PairingArtifact(qr="qr-payload")
        self.handles: list[FakeTransport] = []
        self.connect_errors: list[Exception] = []
        self.connect_events: list[Any] = []
        self.execute_error: Exception | None = None
        self.execute_yields = 1
        self.max_live = 0
        self.active = 0
        self.max_active = 0

    def __call__(self, session_id: str) -> FakeTransport:
        handle = FakeTransport(self, session_id)
        self.handles.append(handle)
        self.max_live = max(self.max_live, self.live_count(session_id))
        return handle

    def live_count(self, session_id: str) -> int:
        return sum(1 for h in self.handles if h.session_id == session_id and not h.closed)

    def latest(self, session_id: str | None = None) -> FakeTransport:
        handles = [h for h in self.handles if session_id is None or h.session_id == session_id]
        return handles[-1]


class EventRecorder:
    """Bus subscriber that keeps every event it sees."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: str, session_id: str | None = None) -> list[Event]:
        return [
            e for e in self.events
            if e.type == event_type and (session_id is None or e.session_id == session_id)
        ]

    def statuses(self, session_id: str | None = None) -> list[str]:
        return [e.payload["status"] for e in self.of_type(EVENT_SESSION_STATUS, session_id)]


@pytest.fixture
def record_store(tmp_path: Path):
    store = SQLiteRecordStore(str(tmp_path / "gateway.db"))
    yield store
    store.close()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def immediate_clock() -> ImmediateClock:
    return ImmediateClock()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()
