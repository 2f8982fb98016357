"""Gateway settings loaded from environment variables."""

from __future__ import annotations

import importlib
import os
from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class ReconnectPolicy:
    base_seconds: float = 2.0
    cap_seconds: float = 60.0
    max_attempts: int = 5


@dataclass(frozen=True)
class DeliveryPolicy:
    """Dispatcher-wide retry knobs; attempts and base delay come from each webhook."""

    default_timeout_seconds: float = 10.0
    default_max_attempts: int = 3
    default_backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1
    max_concurrency: int = 20


@dataclass(frozen=True)
class GatewaySettings:
    db_path: str = "data/gateway.db"
    api_keys: dict[str, str] = field(default_factory=dict)
    transport_factory: str | None = None
    pairing_timeout_seconds: float = 120.0
    command_queue_size: int = 100
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    delivery: DeliveryPolicy = field(default_factory=DeliveryPolicy)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> GatewaySettings:
        """Create settings from GATEWAY_* / WEBHOOK_* environment variables."""
        env = os.environ
        return cls(
            db_path=env.get("GATEWAY_DB_PATH", "data/gateway.db"),
            api_keys=parse_api_keys(env.get("GATEWAY_API_KEYS", "")),
            transport_factory=env.get("GATEWAY_TRANSPORT_FACTORY") or None,
            pairing_timeout_seconds=float(env.get("GATEWAY_PAIRING_TIMEOUT", "120")),
            command_queue_size=int(env.get("GATEWAY_COMMAND_QUEUE_SIZE", "100")),
            reconnect=ReconnectPolicy(
                base_seconds=float(env.get("GATEWAY_RECONNECT_BASE", "2")),
                cap_seconds=float(env.get("GATEWAY_RECONNECT_CAP", "60")),
                max_attempts=int(env.get("GATEWAY_RECONNECT_MAX_ATTEMPTS", "5")),
            ),
            delivery=DeliveryPolicy(
                default_timeout_seconds=float(env.get("WEBHOOK_TIMEOUT", "10")),
                default_max_attempts=int(env.get("WEBHOOK_MAX_ATTEMPTS", "3")),
                default_backoff_base_seconds=float(env.get("WEBHOOK_BACKOFF_BASE", "1")),
                backoff_cap_seconds=float(env.get("WEBHOOK_BACKOFF_CAP", "60")),
                jitter=float(env.get("WEBHOOK_BACKOFF_JITTER", "0.1")),
                max_concurrency=int(env.get("WEBHOOK_MAX_CONCURRENCY", "20")),
            ),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )


def parse_api_keys(raw: str) -> dict[str, str]:
    """Parse ``key:owner,key2:owner2`` into a key -> owner mapping."""
    keys: dict[str, str] = {}
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        key, sep, owner = item.partition(":")
        if not sep or not key or not owner:
            raise ValueError(f"Invalid API key entry: {item!r} (expected key:owner)")
        keys[key.strip()] = owner.strip()
    return keys


def load_object(path: str) -> Any:
    """Import ``module:attribute`` and return the attribute."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Invalid import path: {path!r} (expected module:attr)")
    module = importlib.import_module(module_name)
    return getattr(module, attr)
