"""
Client-side state mirrored from the messaging server.
"""

from .conversation_store import ConversationStore
from .presence import PresenceTracker
from .typing_status import TypingTracker

__all__ = ['ConversationStore', 'PresenceTracker', 'TypingTracker']
