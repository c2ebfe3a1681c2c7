"""Typing indicators, one entry per conversation.

The latest processed signal wins. An entry lives until a stopped-typing
signal for the same conversation arrives; there is no expiry timer.
"""

from __future__ import annotations

from typing import Dict, Optional

from CostumeChat.core.client.events import EventBus
from CostumeChat.core.client.utils.constants import TYPING_CHANGED
from CostumeChat.core.logging import get_logger
from CostumeChat.core.message.protocol import TypingSignal

logger = get_logger(__name__)


class TypingTracker:
    def __init__(self, events: Optional[EventBus] = None):
        self._entries: Dict[str, TypingSignal] = {}
        self.events = events or EventBus()

    def apply_typing_signal(self, conversation_id: str, signal: TypingSignal) -> None:
        if signal.is_typing:
            self._entries[conversation_id] = signal
        elif self._entries.pop(conversation_id, None) is None:
            return
        self.events.emit(TYPING_CHANGED, conversation_id, self._entries.get(conversation_id))

    def get(self, conversation_id: str) -> Optional[TypingSignal]:
        return self._entries.get(conversation_id)

    def is_typing(self, conversation_id: str) -> bool:
        return conversation_id in self._entries

    def snapshot(self) -> Dict[str, TypingSignal]:
        return dict(self._entries)

    def clear(self) -> None:
        if not self._entries:
            return
        cleared = list(self._entries)
        self._entries.clear()
        for conversation_id in cleared:
            self.events.emit(TYPING_CHANGED, conversation_id, None)

    def __len__(self) -> int:
        return len(self._entries)
