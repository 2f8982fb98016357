"""Wiring of record store, event bus, webhook dispatcher and session registry."""

from __future__ import annotations

import logging

from session_gateway.clock import Clock
from session_gateway.config import GatewaySettings, load_object
from session_gateway.events.bus import EventBus
from session_gateway.sessions.registry import SessionRegistry
from session_gateway.sessions.transport import TransportFactory
from session_gateway.store.records import RecordStore, SQLiteRecordStore
from session_gateway.webhook.delivery import WebhookSender
from session_gateway.webhook.dispatcher import WebhookDispatcher

logger = logging.getLogger(__name__)


class Gateway:
    def __init__(
        self,
        settings: GatewaySettings,
        record_store: RecordStore,
        transport_factory: TransportFactory,
        clock: Clock | None = None,
        sender: WebhookSender | None = None,
    ) -> None:
        self.settings = settings
        self.record_store = record_store
        self.bus = EventBus()
        self.dispatcher = WebhookDispatcher(
            record_store, sender=sender, policy=settings.delivery, clock=clock,
        )
        self.dispatcher.attach(self.bus)
        self.registry = SessionRegistry(
            record_store, self.bus, transport_factory, settings=settings, clock=clock,
        )

    @classmethod
    def from_settings(
        cls,
        settings: GatewaySettings,
        transport_factory: TransportFactory | None = None,
    ) -> Gateway:
        """Build a gateway backed by SQLite; the transport factory defaults to the configured import path."""
        if transport_factory is None:
            if not settings.transport_factory:
                raise ValueError("GATEWAY_TRANSPORT_FACTORY must be set (module:attr)")
            transport_factory = load_object(settings.transport_factory)
        return cls(settings, SQLiteRecordStore(settings.db_path), transport_factory)

    async def start(self) -> None:
        self.bus.start()
        self.dispatcher.start()
        restarted = await self.registry.restore()
        logger.info("Gateway started (%d sessions restarted)", len(restarted))

    async def stop(self) -> None:
        await self.registry.shutdown()
        await self.bus.stop()
        await self.dispatcher.aclose()
        close = getattr(self.record_store, "close", None)
        if close is not None:
            close()
        logger.info("Gateway stopped")
