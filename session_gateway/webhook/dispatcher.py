"""Turns bus events into at-least-once webhook deliveries.

Every webhook gets a lane: a FIFO queue drained by one worker task. A lane
finishes a delivery (success, invalid config, or attempts exhausted) before
it starts the next one, so a webhook sees events in submission order, while
a lane waiting out a backoff never holds up other lanes. A shared semaphore
caps the number of HTTP requests in flight across all lanes.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from typing import Any

from session_gateway.backoff import exponential_delay
from session_gateway.clock import Clock, SystemClock
from session_gateway.config import DeliveryPolicy
from session_gateway.errors import NotFoundError, ServiceUnavailableError
from session_gateway.events.bus import EventBus
from session_gateway.models import (
    EVENT_TEST,
    Event,
    Webhook,
    WebhookDeliveryAttempt,
    _new_id,
    _now_iso,
)
from session_gateway.store.records import RecordStore
from session_gateway.webhook.delivery import DeliveryResult, WebhookSender, encode_payload

logger = logging.getLogger(__name__)


@dataclass
class Delivery:
    """One event on its way to one webhook, plus its retry state."""

    webhook_id: str
    delivery_id: str
    event_type: str
    session_id: str
    payload: dict[str, Any]
    timestamp: str
    attempt: int = 0
    next_delay: float = 0.0

    def envelope(self) -> dict[str, Any]:
        return {
            "event": self.event_type,
            "session": self.session_id,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    def body(self) -> bytes:
        return encode_payload(self.event_type, self.session_id, self.payload, self.timestamp)


class _Lane:
    def __init__(self, webhook_id: str, predecessor: asyncio.Task[None] | None = None) -> None:
        self.webhook_id = webhook_id
        # Worker of a cancelled lane for the same webhook that still has a request in flight.
        self.predecessor = predecessor
        self.queue: asyncio.Queue[Delivery] = asyncio.Queue()
        self.task: asyncio.Task[None] | None = None
        self.cancelled = False
        self.in_flight = False


class WebhookDispatcher:
    def __init__(
        self,
        record_store: RecordStore,
        sender: WebhookSender | None = None,
        policy: DeliveryPolicy | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._store = record_store
        self._sender = sender or WebhookSender()
        self._policy = policy or DeliveryPolicy()
        self._clock = clock or SystemClock()
        self._rng = rng
        self._semaphore = asyncio.Semaphore(self._policy.max_concurrency)
        self._lanes: dict[str, _Lane] = {}
        self._retiring: dict[str, asyncio.Task[None]] = {}
        self._running = False

    @property
    def policy(self) -> DeliveryPolicy:
        return self._policy

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(self.handle_event, name="webhook-dispatcher")

    def handle_event(self, event: Event) -> None:
        """Bus subscriber: fan ``event`` out to the session's matching webhooks."""
        try:
            webhooks = self._store.list_webhooks(event.session_id)
        except ServiceUnavailableError as exc:
            logger.error("Cannot resolve webhooks for session %s: %s", event.session_id, exc)
            return
        for webhook in webhooks:
            if webhook.subscribes_to(event.type):
                self.enqueue(webhook, event)

    def enqueue(self, webhook: Webhook, event: Event) -> Delivery:
        delivery = Delivery(
            webhook_id=webhook.id,
            delivery_id=event.id,
            event_type=event.type,
            session_id=event.session_id,
            payload=event.payload,
            timestamp=event.occurred_at,
        )
        self._submit(delivery)
        return delivery

    def cancel_webhook(self, webhook_id: str) -> None:
        """Drop queued deliveries and any pending retry for ``webhook_id``.

        A request already in flight completes and is logged; nothing further
        is scheduled.
        """
        lane = self._lanes.pop(webhook_id, None)
        if lane is None:
            return
        lane.cancelled = True
        dropped = 0
        while True:
            try:
                lane.queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            lane.queue.task_done()
            dropped += 1
        if lane.task is not None and not lane.task.done():
            self._retiring[webhook_id] = lane.task
            lane.task.add_done_callback(functools.partial(self._retired, webhook_id))
            if not lane.in_flight:
                lane.task.cancel()
        logger.info("Cancelled webhook %s lane (%d queued deliveries dropped)", webhook_id, dropped)

    async def send_test(self, webhook: Webhook) -> DeliveryResult:
        """One attempt with a ``test`` event; the result is returned, not logged."""
        body_payload = {"message": "Test delivery from session-gateway", "webhook_id": webhook.id}
        timestamp = _now_iso()
        body = encode_payload(EVENT_TEST, webhook.session_id, body_payload, timestamp)
        async with self._semaphore:
            return await self._sender.send(
                webhook, EVENT_TEST, webhook.session_id, _new_id(), timestamp, body,
            )

    async def replay(self, attempt_id: str) -> Delivery:
        """Queue the logged payload of ``attempt_id`` as a fresh delivery chain."""
        delivery = self._delivery_from_log(attempt_id)
        self._submit(delivery)
        return delivery

    async def redeliver(self, attempt_id: str) -> WebhookDeliveryAttempt:
        """Send the logged payload of ``attempt_id`` once, log and return the attempt."""
        delivery = self._delivery_from_log(attempt_id)
        webhook = self._store.get_webhook(delivery.webhook_id)
        if webhook is None:
            raise NotFoundError(f"Webhook {delivery.webhook_id} not found")
        delivery.attempt = 1
        async with self._semaphore:
            result = await self._sender.send(
                webhook, delivery.event_type, delivery.session_id,
                delivery.delivery_id, delivery.timestamp, delivery.body(),
            )
        return self._record(delivery, result)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for lane in self._lanes.values():
            self._spawn(lane)

    async def join(self) -> None:
        """Wait until every lane has finished what was queued so far."""
        for lane in list(self._lanes.values()):
            await lane.queue.join()

    async def stop(self) -> None:
        self._running = False
        tasks = [lane.task for lane in self._lanes.values() if lane.task is not None]
        tasks.extend(self._retiring.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for lane in self._lanes.values():
            lane.task = None

    async def aclose(self) -> None:
        await self.stop()
        await self._sender.aclose()

    # --- Internals ---

    def _submit(self, delivery: Delivery) -> None:
        lane = self._lanes.get(delivery.webhook_id)
        if lane is None:
            lane = self._lanes[delivery.webhook_id] = _Lane(
                delivery.webhook_id, predecessor=self._retiring.get(delivery.webhook_id),
            )
        lane.queue.put_nowait(delivery)
        if self._running:
            self._spawn(lane)

    def _spawn(self, lane: _Lane) -> None:
        if lane.task is None or lane.task.done():
            lane.task = asyncio.create_task(self._run_lane(lane), name=f"webhook-lane:{lane.webhook_id}")

    def _retired(self, webhook_id: str, task: asyncio.Task[None]) -> None:
        if self._retiring.get(webhook_id) is task:
            del self._retiring[webhook_id]

    async def _run_lane(self, lane: _Lane) -> None:
        if lane.predecessor is not None:
            await asyncio.wait([lane.predecessor])
            lane.predecessor = None
        while not lane.cancelled:
            delivery = await lane.queue.get()
            try:
                await self._deliver(lane, delivery)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Delivery %s to webhook %s crashed", delivery.delivery_id, lane.webhook_id)
            finally:
                lane.queue.task_done()

    async def _deliver(self, lane: _Lane, delivery: Delivery) -> None:
        body = delivery.body()
        webhook = self._load_webhook(delivery.webhook_id)
        while True:
            if lane.cancelled or webhook is None or not webhook.active:
                logger.info(
                    "Webhook %s gone or inactive; stopping delivery %s after %d attempts",
                    delivery.webhook_id, delivery.delivery_id, delivery.attempt,
                )
                return

            delivery.attempt += 1
            async with self._semaphore:
                lane.in_flight = True
                try:
                    result = await self._sender.send(
                        webhook, delivery.event_type, delivery.session_id,
                        delivery.delivery_id, delivery.timestamp, body,
                        attempt=delivery.attempt,
                    )
                finally:
                    lane.in_flight = False
            try:
                self._record(delivery, result)
            except ServiceUnavailableError as exc:
                logger.error("Delivery %s not logged, stopping: %s", delivery.delivery_id, exc)
                return

            if result.succeeded:
                logger.debug(
                    "Delivered %s to webhook %s on attempt %d",
                    delivery.event_type, webhook.id, delivery.attempt,
                )
                return
            if not result.retryable:
                logger.warning(
                    "Webhook %s misconfigured, delivery %s not retried: %s",
                    webhook.id, delivery.delivery_id, result.error,
                )
                return
            if delivery.attempt >= webhook.max_attempts:
                logger.error(
                    "Delivery %s to webhook %s failed after %d attempts: %s",
                    delivery.delivery_id, webhook.id, delivery.attempt, result.error,
                )
                return
            if lane.cancelled:
                return

            delivery.next_delay = exponential_delay(
                delivery.attempt,
                webhook.backoff_base_seconds,
                self._policy.backoff_cap_seconds,
                multiplier=self._policy.multiplier,
                jitter=self._policy.jitter,
                rng=self._rng,
            )
            logger.warning(
                "Delivery %s to webhook %s attempt %d/%d %s; retrying in %.2fs",
                delivery.delivery_id, webhook.id, delivery.attempt,
                webhook.max_attempts, result.outcome.value, delivery.next_delay,
            )
            await self._clock.sleep(delivery.next_delay)
            webhook = self._load_webhook(delivery.webhook_id)

    def _load_webhook(self, webhook_id: str) -> Webhook | None:
        try:
            return self._store.get_webhook(webhook_id)
        except ServiceUnavailableError as exc:
            logger.error("Cannot load webhook %s: %s", webhook_id, exc)
            return None

    def _record(self, delivery: Delivery, result: DeliveryResult) -> WebhookDeliveryAttempt:
        entry = WebhookDeliveryAttempt(
            webhook_id=delivery.webhook_id,
            delivery_id=delivery.delivery_id,
            event_type=delivery.event_type,
            payload=delivery.envelope(),
            attempt=delivery.attempt,
            outcome=result.outcome,
            status_code=result.status_code,
            error=result.error,
            duration_ms=result.duration_ms,
        )
        self._store.append_delivery_log(entry)
        return entry

    def _delivery_from_log(self, attempt_id: str) -> Delivery:
        entry = self._store.get_delivery_attempt(attempt_id)
        if entry is None:
            raise NotFoundError(f"Delivery attempt {attempt_id} not found")
        snapshot = entry.payload
        return Delivery(
            webhook_id=entry.webhook_id,
            delivery_id=_new_id(),
            event_type=entry.event_type,
            session_id=str(snapshot.get("session", "")),
            payload=dict(snapshot.get("payload") or {}),
            timestamp=str(snapshot.get("timestamp") or _now_iso()),
        )
