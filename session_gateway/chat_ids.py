"""Canonical chat identifiers.

Engines report the same account in several spellings (``123@s.whatsapp.net``,
``123:7@s.whatsapp.net``, ``+1 23``). Everything the gateway keys on uses the
``<user>@<server>`` form with ``c.us`` as the server for individual accounts.
"""

from __future__ import annotations

import re
from enum import Enum

USER_SERVER = "c.us"
GROUP_SERVER = "g.us"
NEWSLETTER_SERVER = "newsletter"
BROADCAST_SERVER = "broadcast"
STATUS_BROADCAST = "status@broadcast"

_SERVER_ALIASES = {"s.whatsapp.net": USER_SERVER}
_NON_DIGITS = re.compile(r"\D")


class ChatKind(str, Enum):
    USER = "user"
    GROUP = "group"
    CHANNEL = "channel"
    BROADCAST = "broadcast"
    STATUS = "status"
    OTHER = "other"


def normalize_chat_id(raw: str) -> str:
    """Return the canonical form of a chat or participant id.

    Raises ValueError for empty input or a bare id without any digits.
    """
    value = (raw or "").strip()
    if not value:
        raise ValueError("empty chat id")

    if "@" not in value:
        digits = _NON_DIGITS.sub("", value)
        if not digits:
            raise ValueError(f"invalid chat id: {raw!r}")
        return f"{digits}@{USER_SERVER}"

    user, _, server = value.rpartition("@")
    server = server.lower()
    server = _SERVER_ALIASES.get(server, server)
    if server == USER_SERVER:
        # Drop the multi-device suffix ("123:7") and agent suffix ("123_1").
        user = user.split(":", 1)[0].split("_", 1)[0]
    if not user or not server:
        raise ValueError(f"invalid chat id: {raw!r}")
    return f"{user}@{server}"


def chat_kind(chat_id: str) -> ChatKind:
    if chat_id == STATUS_BROADCAST:
        return ChatKind.STATUS
    server = chat_id.rpartition("@")[2]
    if server == USER_SERVER:
        return ChatKind.USER
    if server == GROUP_SERVER:
        return ChatKind.GROUP
    if server == NEWSLETTER_SERVER:
        return ChatKind.CHANNEL
    if server == BROADCAST_SERVER:
        return ChatKind.BROADCAST
    return ChatKind.OTHER
