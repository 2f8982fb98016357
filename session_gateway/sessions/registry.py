"""Process-wide registry of session state machines."""

from __future__ import annotations

import asyncio
import logging

from session_gateway.clock import Clock, SystemClock
from session_gateway.config import GatewaySettings
from session_gateway.errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    TransportError,
)
from session_gateway.events.bus import EventBus
from session_gateway.models import SessionConfig, SessionRecord, SessionStatus
from session_gateway.sessions.machine import ACTIVE_STATUSES, SessionStateMachine
from session_gateway.sessions.transport import TransportFactory
from session_gateway.store.records import RecordStore

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Maps session ids to their single ``SessionStateMachine``.

    Structural changes (create, remove, restore) are serialized by one lock.
    Removal additionally takes a per-id lock so that a slow logout of one
    session never holds up operations on another.
    """

    def __init__(
        self,
        record_store: RecordStore,
        bus: EventBus,
        transport_factory: TransportFactory,
        settings: GatewaySettings | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._store = record_store
        self._bus = bus
        self._transport_factory = transport_factory
        self._settings = settings or GatewaySettings()
        self._clock = clock or SystemClock()
        self._machines: dict[str, SessionStateMachine] = {}
        self._lock = asyncio.Lock()
        self._id_locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._machines)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._machines

    async def create(
        self,
        owner_id: str,
        name: str,
        config: SessionConfig | None = None,
        start: bool = False,
    ) -> SessionStateMachine:
        async with self._lock:
            if self._store.find_session(owner_id, name) is not None:
                raise ConflictError(f'Session with name "{name}" already exists')
            record = self._store.create_session(
                SessionRecord(owner_id=owner_id, name=name, config=config or SessionConfig()),
            )
            machine = self._build(record)
            self._machines[record.id] = machine
        logger.info("Created session %s (%s) for owner %s", record.id, name, owner_id)
        if start:
            await machine.start()
        return machine

    def get(self, session_id: str, owner_id: str | None = None) -> SessionStateMachine:
        machine = self._machines.get(session_id)
        if machine is None:
            raise NotFoundError(f"Session {session_id} not found")
        if owner_id is not None and machine.owner_id != owner_id:
            raise ForbiddenError(f"Session {session_id} belongs to another owner")
        return machine

    def list(self, owner_id: str | None = None) -> list[SessionStateMachine]:
        return [
            m for m in self._machines.values()
            if owner_id is None or m.owner_id == owner_id
        ]

    async def remove(self, session_id: str, owner_id: str | None = None) -> None:
        """Log the session out, drop it from the registry and soft-delete its record."""
        lock = self._id_locks.setdefault(session_id, asyncio.Lock())
        async with lock:
            machine = self._machines.get(session_id)
            if machine is None:
                return
            if owner_id is not None and machine.owner_id != owner_id:
                raise ForbiddenError(f"Session {session_id} belongs to another owner")
            await machine.logout()
            await machine.shutdown()
            async with self._lock:
                self._machines.pop(session_id, None)
                self._store.deactivate_session(session_id)
            self._bus.forget(session_id)
        self._id_locks.pop(session_id, None)
        logger.info("Removed session %s", session_id)

    async def restore(self) -> list[SessionStateMachine]:
        """Rebuild machines for persisted sessions and restart those that were live.

        Returns the machines that were restarted.
        """
        restarted: list[SessionStateMachine] = []
        async with self._lock:
            records = self._store.list_sessions()
            pending: list[SessionStateMachine] = []
            for record in records:
                if record.id in self._machines:
                    continue
                was_live = record.status in ACTIVE_STATUSES
                if was_live:
                    record = record.model_copy(update={"status": SessionStatus.STOPPED})
                machine = self._build(record)
                self._machines[record.id] = machine
                if was_live:
                    pending.append(machine)
        logger.info("Restored %d sessions, restarting %d", len(records), len(pending))
        for machine in pending:
            try:
                await machine.start()
            except (ConflictError, TransportError) as exc:
                logger.error("Failed to restart session %s: %s", machine.id, exc)
                continue
            restarted.append(machine)
        return restarted

    async def shutdown(self) -> None:
        machines = list(self._machines.values())
        await asyncio.gather(*(m.shutdown() for m in machines), return_exceptions=True)
        logger.info("Shut down %d sessions", len(machines))

    def _build(self, record: SessionRecord) -> SessionStateMachine:
        settings = self._settings
        return SessionStateMachine(
            record,
            transport_factory=self._transport_factory,
            bus=self._bus,
            record_store=self._store,
            clock=self._clock,
            reconnect=settings.reconnect,
            pairing_timeout_seconds=settings.pairing_timeout_seconds,
            command_queue_size=settings.command_queue_size,
        )
