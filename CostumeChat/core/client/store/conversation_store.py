"""
Conversation store.

The single client-side owner of message history. Reconciles three sources:
history loads, optimistic local sends and messages pushed by the server.
Each conversation log is kept sorted by timestamp after every mutation.
"""

from __future__ import annotations

import dataclasses
from typing import Any, Dict, Iterable, List, Optional, Tuple

from CostumeChat.core.client.events import EventBus
from CostumeChat.core.client.utils.constants import CONVERSATION_CHANGED
from CostumeChat.core.logging import get_logger
from CostumeChat.core.message.protocol import DeliveryStatus, Message, MessageKind

logger = get_logger(__name__)

_MESSAGE_FIELDS = frozenset(f.name for f in dataclasses.fields(Message))
_COERCED_FIELDS = {"status": DeliveryStatus, "kind": MessageKind}


def _ordered(messages: Iterable[Message]) -> List[Message]:
    # sorted() is stable: equal timestamps keep arrival order.
    return sorted(messages, key=lambda m: m.timestamp)


def _unique_confirmed(messages: List[Message]) -> List[Message]:
    """Collapse confirmed messages sharing an id; the last copy wins, at the first copy's position."""
    latest = {m.id: m for m in messages if m.is_confirmed}
    seen = set()
    unique = []
    for msg in messages:
        if not msg.is_confirmed:
            unique.append(msg)
        elif msg.id not in seen:
            seen.add(msg.id)
            unique.append(latest[msg.id])
    return unique


class ConversationStore:
    """Per-conversation ordered message logs."""

    def __init__(self, events: Optional[EventBus] = None):
        self._conversations: Dict[str, List[Message]] = {}
        self.events = events or EventBus()

    # ==================== Reads ====================

    @property
    def conversation_ids(self) -> List[str]:
        return list(self._conversations)

    def get_messages(self, conversation_id: str) -> Tuple[Message, ...]:
        """Snapshot of a conversation, oldest first. Unknown ids read as empty."""
        return tuple(self._conversations.get(conversation_id, ()))

    def get_message(self, conversation_id: str, message_id: str) -> Optional[Message]:
        for msg in self._conversations.get(conversation_id, ()):
            if msg.id == message_id:
                return msg
        return None

    def pending_messages(self, conversation_id: str) -> Tuple[Message, ...]:
        """Optimistic entries still waiting for the server."""
        return tuple(m for m in self._conversations.get(conversation_id, ()) if not m.is_confirmed)

    def unread_count(self, conversation_id: str, current_user_id: str) -> int:
        return sum(
            1 for m in self._conversations.get(conversation_id, ())
            if m.sender_id != current_user_id and not m.is_read
        )

    # ==================== Mutations ====================

    def _ensure_conversation(self, conversation_id: str) -> List[Message]:
        return self._conversations.setdefault(conversation_id, [])

    def _commit(self, conversation_id: str, messages: Iterable[Message]) -> None:
        self._conversations[conversation_id] = _ordered(messages)
        self.events.emit(CONVERSATION_CHANGED, conversation_id)

    def replace_all(self, conversation_id: str, messages: Iterable[Message]) -> None:
        """
        Overwrite a conversation with an authoritative snapshot.

        Only for full history loads: optimistic entries not present in
        ``messages`` are dropped. Confirmed messages repeated in the
        snapshot are kept once.
        """
        given = list(messages)
        messages = _unique_confirmed(given)
        if len(messages) != len(given):
            logger.debug("Dropped %d repeated messages from snapshot of %s",
                         len(given) - len(messages), conversation_id)
        logger.debug("Replacing conversation %s with %d messages", conversation_id, len(messages))
        self._commit(conversation_id, messages)

    def insert_confirmed(self, conversation_id: str, message: Message) -> bool:
        """
        Insert a server-confirmed message.

        A message whose id is already in the log is ignored (duplicate
        delivery). When the message echoes the ``client_id`` of an
        unconfirmed entry, that entry is replaced by this one.

        Returns:
            True if the log changed
        """
        existing = self._ensure_conversation(conversation_id)
        if any(m.id == message.id for m in existing):
            logger.debug("Message %s already in conversation %s, skipping", message.id, conversation_id)
            return False

        updated = existing
        if message.client_id:
            updated = [
                m for m in existing
                if m.is_confirmed or m.id != message.client_id
            ]
            if len(updated) != len(existing):
                logger.debug("Reconciled optimistic %s with %s", message.client_id, message.id)

        self._commit(conversation_id, [*updated, message])
        return True

    def insert_optimistic(self, conversation_id: str, message: Message) -> None:
        """Append a locally-originated message that the server has not confirmed yet."""
        if message.status is not DeliveryStatus.PENDING:
            message = dataclasses.replace(message, status=DeliveryStatus.PENDING)
        existing = self._ensure_conversation(conversation_id)
        logger.debug("Adding optimistic message %s to %s", message.id, conversation_id)
        self._commit(conversation_id, [*existing, message])

    def update(self, conversation_id: str, message_id: str, **changes: Any) -> bool:
        """
        Apply a partial change to one message.

        Unknown field names, values that are not a valid ``status`` or
        ``kind``, and an ``id`` already used in the conversation are
        ignored. Returns True if the message was found.
        """
        unknown = set(changes) - _MESSAGE_FIELDS
        if unknown:
            logger.warning("Ignoring unknown message fields: %s", ", ".join(sorted(unknown)))
            changes = {k: v for k, v in changes.items() if k in _MESSAGE_FIELDS}

        for name, enum_type in _COERCED_FIELDS.items():
            if name not in changes:
                continue
            try:
                changes[name] = enum_type(changes[name])
            except ValueError:
                logger.warning("Ignoring invalid %s %r", name, changes.pop(name))

        messages = self._conversations.get(conversation_id)
        if not messages:
            return False
        for i, msg in enumerate(messages):
            if msg.id == message_id:
                break
        else:
            return False

        new_id = changes.get("id")
        if new_id is not None and new_id != msg.id and any(m.id == new_id for m in messages):
            logger.warning("Ignoring id change %s -> %s in %s: id already in use", msg.id, new_id, conversation_id)
            del changes["id"]

        if not changes:
            return True
        updated = list(messages)
        updated[i] = dataclasses.replace(msg, **changes)
        self._commit(conversation_id, updated)
        return True

    def remove(self, conversation_id: str, message_id: str) -> bool:
        """Delete one message; the rollback path for a failed optimistic send."""
        messages = self._conversations.get(conversation_id)
        if not messages:
            return False
        remaining = [m for m in messages if m.id != message_id]
        if len(remaining) == len(messages):
            return False
        self._commit(conversation_id, remaining)
        return True

    def mark_all_read_from(self, conversation_id: str, current_user_id: str) -> int:
        """
        Mark every message not authored by ``current_user_id`` as read.

        Returns:
            Number of messages that changed
        """
        messages = self._conversations.get(conversation_id)
        if not messages:
            return 0
        changed = 0
        updated = []
        for msg in messages:
            if msg.sender_id != current_user_id and not msg.is_read:
                msg = dataclasses.replace(msg, is_read=True)
                changed += 1
            updated.append(msg)
        if changed:
            self._commit(conversation_id, updated)
        return changed

    def clear_conversation(self, conversation_id: str) -> None:
        if self._conversations.pop(conversation_id, None) is not None:
            self.events.emit(CONVERSATION_CHANGED, conversation_id)

    def clear(self) -> None:
        """Drop every conversation (logout)."""
        cleared = list(self._conversations)
        self._conversations.clear()
        for conversation_id in cleared:
            self.events.emit(CONVERSATION_CHANGED, conversation_id)
