"""In-memory presence reconciliation for one session.

Folds plain presence stanzas and chat-state stanzas, which arrive in no
particular order, into one ``PresenceRecord`` per chat. The last notification
applied for a participant wins. Nothing here is persisted.
"""

from __future__ import annotations

import logging

from session_gateway.chat_ids import normalize_chat_id
from session_gateway.models import ParticipantPresence, PresenceRecord, PresenceState
from session_gateway.sessions.transport import (
    ChatStateNotification,
    PresenceNotification,
    parse_raw_event,
)

logger = logging.getLogger(__name__)

# Values the engine sends in place of a timestamp when last-seen is private.
HIDDEN_LAST_SEEN = frozenset({"deny", "hidden", "none", "error"})

_CHAT_STATE_PRESENCE = {
    "unavailable": PresenceState.OFFLINE,
    "available": PresenceState.ONLINE,
    "paused": PresenceState.PAUSED,
    "composing": PresenceState.TYPING,
}


class PresenceStore:
    """Per-chat presence table keyed by canonical chat id."""

    def __init__(self, session_id: str = "") -> None:
        self._session_id = session_id
        self._records: dict[str, PresenceRecord] = {}

    def apply(self, raw: object) -> PresenceRecord | None:
        """Merge one raw notification and return the chat's updated record.

        Malformed or unrelated notifications are logged and dropped; this
        method never raises.
        """
        try:
            event = parse_raw_event(raw)
            if isinstance(event, PresenceNotification):
                chat_id, entry = _from_presence(event)
            elif isinstance(event, ChatStateNotification):
                chat_id, entry = _from_chat_state(event)
            else:
                logger.warning(
                    "Dropping non-presence notification for session %s: %r",
                    self._session_id, event,
                )
                return None
        except (ValueError, TypeError) as exc:
            logger.warning(
                "Dropping malformed presence notification for session %s: %s",
                self._session_id, exc,
            )
            return None

        record = self._merge(chat_id, entry)
        return record.model_copy(deep=True)

    def get(self, chat_id: str) -> PresenceRecord:
        """Current merged record for ``chat_id`` or an empty one."""
        try:
            key = normalize_chat_id(chat_id)
        except ValueError:
            return PresenceRecord(chat_id=chat_id)
        record = self._records.get(key)
        if record is None:
            return PresenceRecord(chat_id=key)
        return record.model_copy(deep=True)

    def all(self) -> list[PresenceRecord]:
        return [r.model_copy(deep=True) for r in self._records.values()]

    def clear(self) -> None:
        self._records.clear()

    def __len__(self) -> int:
        return len(self._records)

    def _merge(self, chat_id: str, entry: ParticipantPresence) -> PresenceRecord:
        record = self._records.get(chat_id)
        if record is None:
            record = PresenceRecord(chat_id=chat_id)
            self._records[chat_id] = record

        for idx, existing in enumerate(record.presences):
            if existing.participant == entry.participant:
                record.presences[idx] = existing.model_copy(update={
                    "last_known_presence": entry.last_known_presence,
                    "last_seen": entry.last_seen,
                })
                break
        else:
            record.presences.append(entry)
        return record


def _from_presence(event: PresenceNotification) -> tuple[str, ParticipantPresence]:
    chat_id = normalize_chat_id(event.sender)
    state = PresenceState.ONLINE if event.available else PresenceState.OFFLINE
    return chat_id, ParticipantPresence(
        participant=chat_id,
        last_known_presence=state,
        last_seen=_parse_last_seen(event.last),
    )


def _from_chat_state(event: ChatStateNotification) -> tuple[str, ParticipantPresence]:
    chat_id = normalize_chat_id(event.sender)
    participant = normalize_chat_id(event.participant) if event.participant else chat_id
    state = _CHAT_STATE_PRESENCE.get(event.subtype)
    if state is None:
        raise ValueError(f"unknown chat-state subtype {event.subtype!r}")
    if state == PresenceState.TYPING and event.is_audio:
        state = PresenceState.RECORDING
    return chat_id, ParticipantPresence(
        participant=participant,
        last_known_presence=state,
        last_seen=None,
    )


def _parse_last_seen(value: str | None) -> int | None:
    if value is None or value.strip().lower() in HIDDEN_LAST_SEEN:
        return None
    try:
        return int(value)
    except ValueError:
        return None
