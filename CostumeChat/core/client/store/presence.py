"""Presence tracking for CostumeChat.

Mirrors the server's authoritative snapshot of connected user ids. Every
``onlineUsers`` push replaces the whole set; nothing is merged.
"""

from __future__ import annotations

from typing import Any, FrozenSet, Optional

from CostumeChat.core.client.events import EventBus
from CostumeChat.core.client.utils.constants import PRESENCE_CHANGED
from CostumeChat.core.logging import get_logger

logger = get_logger(__name__)


class PresenceTracker:
    def __init__(self, events: Optional[EventBus] = None):
        self._online: FrozenSet[str] = frozenset()
        self.events = events or EventBus()

    @property
    def online_users(self) -> FrozenSet[str]:
        return self._online

    @property
    def count(self) -> int:
        return len(self._online)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._online

    def apply_presence_snapshot(self, user_ids: Any) -> None:
        """Replace the online set. Malformed input counts as an empty snapshot."""
        if not isinstance(user_ids, (list, tuple, set, frozenset)):
            if user_ids is not None:
                logger.warning("Ignoring malformed presence snapshot: %r", user_ids)
            user_ids = ()
        snapshot = frozenset(u for u in user_ids if isinstance(u, str) and u)
        if snapshot == self._online:
            return
        self._online = snapshot
        logger.debug("Presence snapshot applied: %d users online", len(snapshot))
        self.events.emit(PRESENCE_CHANGED, snapshot)

    def clear(self) -> None:
        self.apply_presence_snapshot(())
