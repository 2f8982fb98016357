"""Lifecycle state machine for a single chat session.

The machine is the only writer of its session's state. Engine notifications
are applied synchronously through ``handle_raw_event``; the resulting events
are published to the bus without waiting on subscribers. Commands run one at
a time through a bounded FIFO queue with a single consumer task that lives
for as long as the session stays CONNECTED.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import re
from collections.abc import Coroutine
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from session_gateway.backoff import exponential_delay
from session_gateway.chat_ids import ChatKind, chat_kind, normalize_chat_id
from session_gateway.clock import Clock, SystemClock
from session_gateway.config import ReconnectPolicy
from session_gateway.errors import (
    ConflictError,
    GatewayError,
    InvalidStateError,
    ServiceUnavailableError,
    SessionNotConnectedError,
    TransportError,
    ValidationError,
)
from session_gateway.events.bus import EventBus
from session_gateway.models import (
    EVENT_PRESENCE_UPDATE,
    EVENT_SESSION_STATUS,
    SessionConfig,
    SessionRecord,
    SessionStatus,
)
from session_gateway.presence.store import PresenceStore
from session_gateway.sessions.transport import (
    AuthFailureEvent,
    ChatStateNotification,
    ConnectedEvent,
    DisconnectedEvent,
    DisconnectReason,
    MessageNotification,
    PairingArtifact,
    PairingEvent,
    PresenceNotification,
    TransportFactory,
    TransportHandle,
    parse_raw_event,
)
from session_gateway.store.records import RecordStore

logger = logging.getLogger(__name__)

S = SessionStatus

TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    S.CREATED: frozenset({S.STARTING}),
    S.STOPPED: frozenset({S.STARTING}),
    S.STARTING: frozenset({S.SCAN_QR_CODE, S.CONNECTED, S.FAILED, S.STOPPED}),
    S.SCAN_QR_CODE: frozenset({S.CONNECTED, S.FAILED, S.STOPPED}),
    S.CONNECTED: frozenset({S.RECONNECTING, S.FAILED, S.STOPPED}),
    S.RECONNECTING: frozenset({S.CONNECTED, S.FAILED, S.STOPPED}),
    S.FAILED: frozenset({S.STOPPED}),
}

ACTIVE_STATUSES = frozenset({S.STARTING, S.SCAN_QR_CODE, S.CONNECTED, S.RECONNECTING})
PAIRING_STATUSES = frozenset({S.STARTING, S.SCAN_QR_CODE})

_IGNORE_FLAGS = {
    ChatKind.STATUS: "status",
    ChatKind.GROUP: "groups",
    ChatKind.CHANNEL: "channels",
    ChatKind.BROADCAST: "broadcast",
}

_NON_DIGITS = re.compile(r"\D")


class SessionStateMachine:
    """Owns one session's status, transport handle and command queue."""

    def __init__(
        self,
        record: SessionRecord,
        transport_factory: TransportFactory,
        bus: EventBus,
        record_store: RecordStore | None = None,
        clock: Clock | None = None,
        reconnect: ReconnectPolicy | None = None,
        pairing_timeout_seconds: float = 120.0,
        command_queue_size: int = 100,
    ) -> None:
        self._record = record
        self._transport_factory = transport_factory
        self._bus = bus
        self._store = record_store
        self._clock = clock or SystemClock()
        self._reconnect_policy = reconnect or ReconnectPolicy()
        self._pairing_timeout_seconds = pairing_timeout_seconds
        self._command_queue_size = command_queue_size

        self.presence = PresenceStore(record.id)
        self._status = record.status
        self._sequence = 0
        self._last_connected_at = record.last_connected_at
        self._profile: dict[str, Any] = {}

        self._transport: TransportHandle | None = None
        self._artifact: PairingArtifact | None = None
        self._commands: asyncio.Queue[tuple[str, dict[str, Any], asyncio.Future[Any]]] | None = None
        self._command_worker: asyncio.Task[None] | None = None
        self._pairing_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[Any]] = set()
        self._lifecycle_lock = asyncio.Lock()
        self._restarting = False
        self._tearing_down = False
        self._closed = False

    # --- Read-only views ---

    @property
    def id(self) -> str:
        return self._record.id

    @property
    def owner_id(self) -> str:
        return self._record.owner_id

    @property
    def name(self) -> str:
        return self._record.name

    @property
    def config(self) -> SessionConfig:
        return self._record.config

    @property
    def pairing_artifact(self) -> PairingArtifact | None:
        return self._artifact

    @property
    def has_transport(self) -> bool:
        return self._transport is not None

    def get_status(self) -> SessionStatus:
        return self._status

    def snapshot(self) -> dict[str, Any]:
        artifact = self._artifact
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "name": self.name,
            "status": self._status.value,
            "sequence": self._sequence,
            "last_connected_at": self._last_connected_at,
            "pairing": (
                {"qr": artifact.qr, "code": artifact.code}
                if artifact is not None and self._status in PAIRING_STATUSES
                else None
            ),
            "profile": dict(self._profile),
            "config": self.config.model_dump(mode="json"),
        }

    # --- Lifecycle ---

    async def start(self) -> SessionStatus:
        """Allocate a transport and begin connecting.

        Raises:
            ConflictError: the session is already active or a restart is in flight.
            InvalidStateError: the session is FAILED (use ``restart``).
            TransportError: the engine refused the connection.
        """
        if self._restarting:
            raise ConflictError(f"Session {self.id} is restarting")
        return await self._start()

    async def restart(self) -> SessionStatus:
        """Tear the transport down (STOPPED) and start again (STARTING, ...)."""
        if self._restarting:
            raise ConflictError(f"Session {self.id} is already restarting")
        self._restarting = True
        try:
            await self._teardown(logout=False, reason="restart")
            return await self._start()
        finally:
            self._restarting = False

    async def logout(self) -> SessionStatus:
        """Terminal teardown that also clears the engine's stored credentials."""
        await self._teardown(logout=True, reason="logout")
        return self._status

    async def shutdown(self) -> None:
        """Release resources on process exit without changing the persisted status."""
        self._closed = True
        self._cancel_timers()
        self._abandon_commands()
        await self._release_transport()
        await self._drain_background()

    async def request_pairing_code(self, phone_number: str) -> str:
        if self._status not in PAIRING_STATUSES or self._transport is None:
            raise InvalidStateError(
                f"Pairing code can only be requested while pairing "
                f"(current status: {self._status.value})"
            )
        digits = _NON_DIGITS.sub("", phone_number or "")
        if not digits:
            raise ValidationError("phone_number must contain digits")
        try:
            code = str(await self._transport.request_pairing_code(digits))
        except GatewayError:
            raise
        except Exception as exc:
            logger.error("Session %s: pairing code request failed: %s", self.id, exc)
            raise TransportError(f"Failed to request pairing code: {exc}") from exc
        logger.info("Session %s: pairing code issued for ...%s", self.id, digits[-4:])
        return f"{code[:4]}-{code[4:]}" if len(code) == 8 else code

    async def issue_command(self, op: str | Enum, args: dict[str, Any] | None = None) -> Any:
        """Queue a command behind earlier ones and wait for its own result."""
        op_name = op.value if isinstance(op, Enum) else str(op)
        queue = self._commands
        if self._status != S.CONNECTED or queue is None:
            raise SessionNotConnectedError(self.id, self._status.value)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await queue.put((op_name, dict(args or {}), future))
        if queue is not self._commands and not future.done():
            # The queue was abandoned while this caller waited for room.
            future.set_exception(SessionNotConnectedError(self.id, self._status.value))
        return await future

    # --- Transport callbacks ---

    def on_transport_disconnected(self, reason: DisconnectReason | str) -> None:
        if not isinstance(reason, DisconnectReason):
            reason = DisconnectReason.parse(reason)
        if self._closed or self._tearing_down or self._transport is None:
            logger.debug("Session %s: ignoring disconnect (%s) during teardown", self.id, reason.value)
            return

        status = self._status
        if status in PAIRING_STATUSES:
            self._fail(f"disconnected:{reason.value}")
        elif status == S.CONNECTED:
            self._abandon_commands()
            if not reason.recoverable:
                self._fail(reason.value)
                return
            self._transition(S.RECONNECTING, reason=reason.value)
            self._reconnect_task = self._spawn(self._reconnect())
        elif status == S.RECONNECTING and not reason.recoverable:
            self._fail(reason.value)

    def handle_raw_event(self, raw: object) -> None:
        """Apply one engine notification. Unknown or malformed input is dropped."""
        event = parse_raw_event(raw)
        try:
            if isinstance(event, PairingEvent):
                self._on_pairing(event.artifact)
            elif isinstance(event, ConnectedEvent):
                self._on_connected(event.info)
            elif isinstance(event, AuthFailureEvent):
                self._on_auth_failure(event.message)
            elif isinstance(event, DisconnectedEvent):
                self.on_transport_disconnected(event.reason)
            elif isinstance(event, (PresenceNotification, ChatStateNotification)):
                self._on_presence(event)
            elif isinstance(event, MessageNotification):
                self._on_message(event)
            else:
                logger.warning("Session %s: dropping unrecognized event %r", self.id, event)
        except GatewayError as exc:
            logger.warning("Session %s: could not apply %r: %s", self.id, event, exc)

    def _on_transport_event(self, transport: TransportHandle, raw: object) -> None:
        if transport is not self._transport:
            logger.debug("Session %s: ignoring event from a released transport", self.id)
            return
        self.handle_raw_event(raw)

    # --- Event handlers ---

    def _on_pairing(self, artifact: PairingArtifact) -> None:
        if artifact.authenticated:
            self._on_connected({})
            return
        if self._status == S.STARTING:
            self._artifact = artifact
            self._transition(S.SCAN_QR_CODE)
            self._pairing_task = self._spawn(self._pairing_timeout())
        elif self._status == S.SCAN_QR_CODE:
            self._artifact = artifact
        else:
            logger.debug("Session %s: pairing artifact ignored in %s", self.id, self._status.value)

    def _on_connected(self, info: dict[str, Any]) -> None:
        if self._status not in (S.STARTING, S.SCAN_QR_CODE, S.RECONNECTING):
            logger.debug("Session %s: connected event ignored in %s", self.id, self._status.value)
            return
        self._cancel_timers()
        self._artifact = None
        self._profile = dict(info)
        self._last_connected_at = datetime.now(UTC).isoformat()
        self._transition(S.CONNECTED)
        self._start_command_worker()

    def _on_auth_failure(self, message: str) -> None:
        if self._status in ACTIVE_STATUSES:
            logger.error("Session %s: authentication failed: %s", self.id, message)
            self._fail("auth_failure")

    def _on_presence(self, event: PresenceNotification | ChatStateNotification) -> None:
        record = self.presence.apply(event)
        if record is not None:
            self._bus.publish(self.id, EVENT_PRESENCE_UPDATE, record.model_dump(mode="json"))

    def _on_message(self, event: MessageNotification) -> None:
        try:
            chat_id = normalize_chat_id(event.chat_id)
        except ValueError:
            logger.warning("Session %s: dropping %s with bad chat id %r", self.id, event.event_type, event.chat_id)
            return
        flag = _IGNORE_FLAGS.get(chat_kind(chat_id))
        if flag is not None and getattr(self.config.ignore, flag):
            logger.debug("Session %s: ignoring %s from %s", self.id, event.event_type, chat_id)
            return
        self._bus.publish(self.id, event.event_type, {**event.data, "chat_id": chat_id})

    # --- Internals ---

    async def _start(self) -> SessionStatus:
        if self._status in ACTIVE_STATUSES:
            raise ConflictError(f"Session {self.id} is already {self._status.value}")
        if self._status not in (S.CREATED, S.STOPPED):
            raise InvalidStateError(
                f"Session {self.id} cannot start from {self._status.value}; restart it instead"
            )
        self._closed = False
        self._transition(S.STARTING)
        transport = self._allocate_transport()
        try:
            artifact = await transport.connect(self.config)
        except Exception as exc:
            if self._status == S.STARTING and self._transport is transport:
                logger.error("Session %s: connect failed: %s", self.id, exc)
                self._fail("connect_failed")
            elif self._status != S.FAILED:
                logger.info("Session %s: connect aborted by teardown", self.id)
                return self._status
            # An engine notification may already have failed the session.
            raise TransportError(f"Failed to connect session {self.id}: {exc}") from exc

        if self._transport is transport:
            self._on_pairing(artifact)
        return self._status

    def _allocate_transport(self) -> TransportHandle:
        if self._transport is not None:
            raise ConflictError(f"Session {self.id} already holds a live transport")
        transport = self._transport_factory(self.id)
        transport.set_event_handler(functools.partial(self._on_transport_event, transport))
        self._transport = transport
        return transport

    async def _release_transport(self, logout: bool = False) -> None:
        transport, self._transport = self._transport, None
        self._artifact = None
        if transport is None and logout:
            # No live connection (FAILED); a short-lived handle clears stored credentials.
            transport = self._transport_factory(self.id)
            transport.set_event_handler(functools.partial(self._on_transport_event, transport))
        if transport is None:
            return
        await self._close_transport(transport, logout=logout)

    async def _close_transport(self, transport: TransportHandle, logout: bool = False) -> None:
        if logout:
            try:
                await transport.logout()
            except Exception as exc:
                logger.warning("Session %s: engine logout failed: %s", self.id, exc)
        try:
            await transport.disconnect()
        except Exception as exc:
            logger.warning("Session %s: transport disconnect failed: %s", self.id, exc)

    async def _teardown(self, logout: bool, reason: str) -> None:
        async with self._lifecycle_lock:
            if self._status in (S.CREATED, S.STOPPED):
                return
            self._tearing_down = True
            try:
                self._cancel_timers()
                self._abandon_commands()
                await self._release_transport(logout=logout)
                self.presence.clear()
                self._transition(S.STOPPED, reason=reason)
            finally:
                self._tearing_down = False

    def _fail(self, reason: str) -> None:
        if self._status == S.FAILED:
            return
        self._cancel_timers()
        self._abandon_commands()
        # Detach now so a later start/restart never sees this handle.
        transport, self._transport = self._transport, None
        self._artifact = None
        self._transition(S.FAILED, reason=reason)
        if transport is not None:
            self._spawn(self._close_transport(transport))

    async def _pairing_timeout(self) -> None:
        await self._clock.sleep(self._pairing_timeout_seconds)
        if self._status != S.SCAN_QR_CODE:
            return
        self._pairing_task = None
        logger.warning(
            "Session %s: pairing not completed within %.0fs",
            self.id, self._pairing_timeout_seconds,
        )
        self._fail("pairing_timeout")

    async def _reconnect(self) -> None:
        policy = self._reconnect_policy
        for attempt in range(1, policy.max_attempts + 1):
            delay = exponential_delay(attempt, policy.base_seconds, policy.cap_seconds)
            logger.info(
                "Session %s: reconnect attempt %d/%d in %.1fs",
                self.id, attempt, policy.max_attempts, delay,
            )
            await self._clock.sleep(delay)
            transport = self._transport
            if self._status != S.RECONNECTING or transport is None:
                return
            try:
                artifact = await transport.connect(self.config)
            except Exception as exc:
                logger.warning("Session %s: reconnect attempt %d failed: %s", self.id, attempt, exc)
                continue
            if self._status != S.RECONNECTING or self._transport is not transport:
                return
            self._reconnect_task = None
            if artifact.requires_pairing:
                self._fail("credentials_lost")
            else:
                self._on_connected({})
            return

        if self._status == S.RECONNECTING:
            self._reconnect_task = None
            self._fail("reconnect_exhausted")

    def _start_command_worker(self) -> None:
        self._abandon_commands()
        queue: asyncio.Queue[tuple[str, dict[str, Any], asyncio.Future[Any]]] = asyncio.Queue(
            maxsize=self._command_queue_size,
        )
        self._commands = queue
        self._command_worker = asyncio.create_task(
            self._run_commands(queue, self._transport),
            name=f"session-commands:{self.id}",
        )

    async def _run_commands(
        self,
        queue: asyncio.Queue[tuple[str, dict[str, Any], asyncio.Future[Any]]],
        transport: TransportHandle | None,
    ) -> None:
        while True:
            op, args, future = await queue.get()
            try:
                if future.done():
                    continue
                if self._status != S.CONNECTED or transport is None or self._transport is not transport:
                    future.set_exception(SessionNotConnectedError(self.id, self._status.value))
                    continue
                try:
                    result = await transport.execute(op, args)
                except asyncio.CancelledError:
                    if not future.done():
                        future.set_exception(SessionNotConnectedError(self.id, self._status.value))
                    raise
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                queue.task_done()

    def _abandon_commands(self) -> None:
        queue, self._commands = self._commands, None
        worker, self._command_worker = self._command_worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
        if queue is None:
            return
        while True:
            try:
                _, _, future = queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            if not future.done():
                future.set_exception(SessionNotConnectedError(self.id, self._status.value))
            queue.task_done()

    def _cancel_timers(self) -> None:
        current = asyncio.current_task()
        for attr in ("_pairing_task", "_reconnect_task"):
            task = getattr(self, attr)
            setattr(self, attr, None)
            if task is not None and task is not current and not task.done():
                task.cancel()

    def _transition(self, new: SessionStatus, reason: str | None = None) -> None:
        previous = self._status
        if new not in TRANSITIONS[previous]:
            raise InvalidStateError(
                f"Session {self.id}: transition {previous.value} -> {new.value} not allowed"
            )
        self._status = new
        self._sequence += 1
        logger.info(
            "Session %s: %s -> %s%s",
            self.id, previous.value, new.value, f" ({reason})" if reason else "",
        )
        self._persist(new)
        self._bus.publish(self.id, EVENT_SESSION_STATUS, {
            "status": new.value,
            "previous": previous.value,
            "sequence": self._sequence,
            "reason": reason,
        })

    def _persist(self, status: SessionStatus) -> None:
        if self._store is None:
            return
        last_connected = self._last_connected_at if status == S.CONNECTED else None
        try:
            self._store.save_session_status(self.id, status, last_connected)
        except ServiceUnavailableError as exc:
            logger.warning("Session %s: status %s not persisted: %s", self.id, status.value, exc)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _drain_background(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._background if t is not current]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
