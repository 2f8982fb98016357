"""Single HTTP delivery attempt to a webhook endpoint.

Signing, header construction and outcome classification live here; retry
scheduling is the dispatcher's job.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from session_gateway.errors import WebhookConfigError
from session_gateway.models import DeliveryOutcome, Webhook

logger = logging.getLogger(__name__)

USER_AGENT = "session-gateway-webhook/1.0"
SIGNATURE_HEADER = "X-Gateway-Signature"

_MAX_ERROR_LENGTH = 500


@dataclass(frozen=True)
class DeliveryResult:
    outcome: DeliveryOutcome
    status_code: int | None = None
    error: str | None = None
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome == DeliveryOutcome.SUCCESS

    @property
    def retryable(self) -> bool:
        """Invalid configuration is the only outcome that is never retried."""
        return self.outcome in (DeliveryOutcome.TRANSIENT_FAILURE, DeliveryOutcome.PERMANENT_FAILURE)


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, header: str) -> bool:
    """Check an ``X-Gateway-Signature`` value the way a receiver would."""
    if not header.startswith("sha256="):
        return False
    return hmac.compare_digest(header[7:], sign_payload(secret, body))


def encode_payload(
    event_type: str,
    session_id: str,
    payload: dict[str, Any],
    timestamp: str,
) -> bytes:
    """Serialize the delivery body once; the same bytes are signed and sent."""
    return json.dumps(
        {"event": event_type, "session": session_id, "payload": payload, "timestamp": timestamp},
        separators=(",", ":"),
        sort_keys=True,
        default=str,
    ).encode()


def validate_webhook_url(url: str) -> str:
    """Return ``url`` if it is an absolute http(s) URL, else raise ``WebhookConfigError``."""
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError) as exc:
        raise WebhookConfigError(f"Invalid webhook URL {url!r}: {exc}") from exc
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise WebhookConfigError(f"Invalid webhook URL {url!r}: expected http(s)://host/...")
    return url


def build_headers(
    webhook: Webhook,
    event_type: str,
    session_id: str,
    delivery_id: str,
    timestamp: str,
    attempt: int,
    body: bytes,
) -> dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        "X-Gateway-Event": event_type,
        "X-Gateway-Session": session_id,
        "X-Gateway-Timestamp": timestamp,
        "X-Gateway-Delivery": delivery_id,
        "X-Gateway-Attempt": str(attempt),
    }
    headers.update(webhook.custom_headers)
    if webhook.secret:
        headers[SIGNATURE_HEADER] = f"sha256={sign_payload(webhook.secret, body)}"
    return headers


def classify_status(status_code: int) -> DeliveryOutcome:
    if 200 <= status_code < 300:
        return DeliveryOutcome.SUCCESS
    if status_code == 429 or status_code >= 500:
        return DeliveryOutcome.TRANSIENT_FAILURE
    return DeliveryOutcome.PERMANENT_FAILURE


class WebhookSender:
    """Posts signed payloads with one shared ``httpx.AsyncClient``.

    ``transport`` lets tests substitute ``httpx.MockTransport``.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._client = httpx.AsyncClient(transport=transport, verify=True, follow_redirects=False)

    async def send(
        self,
        webhook: Webhook,
        event_type: str,
        session_id: str,
        delivery_id: str,
        timestamp: str,
        body: bytes,
        attempt: int = 1,
        timeout: float | None = None,
    ) -> DeliveryResult:
        started = time.monotonic()
        try:
            validate_webhook_url(webhook.url)
        except WebhookConfigError as exc:
            return DeliveryResult(DeliveryOutcome.INVALID_CONFIG, error=exc.message)

        headers = build_headers(
            webhook, event_type, session_id, delivery_id, timestamp, attempt, body,
        )
        try:
            resp = await self._client.post(
                webhook.url,
                content=body,
                headers=headers,
                timeout=timeout or webhook.timeout_seconds,
            )
        except httpx.InvalidURL as exc:
            return DeliveryResult(DeliveryOutcome.INVALID_CONFIG, error=str(exc))
        except httpx.HTTPError as exc:
            logger.debug("Webhook %s request error: %s", webhook.id, exc)
            return DeliveryResult(
                DeliveryOutcome.TRANSIENT_FAILURE,
                error=f"{type(exc).__name__}: {exc}"[:_MAX_ERROR_LENGTH],
                duration_ms=_elapsed_ms(started),
            )

        outcome = classify_status(resp.status_code)
        error = None
        if outcome != DeliveryOutcome.SUCCESS:
            error = f"HTTP {resp.status_code}: {resp.text[:_MAX_ERROR_LENGTH]}"
        return DeliveryResult(
            outcome,
            status_code=resp.status_code,
            error=error,
            duration_ms=_elapsed_ms(started),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))
