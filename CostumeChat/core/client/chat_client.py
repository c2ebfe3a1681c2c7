"""
Chat client facade.

Wires one conversation store, the presence and typing trackers, the
connection manager, the outbound dispatcher and the REST API client
together. UI code talks to this object and subscribes to the ``events``
buses of its parts.
"""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Any, Dict, List, Optional

from CostumeChat.api.client import CostumeChatAPIClient
from CostumeChat.core.client.connection import ConnectionManager, Connector
from CostumeChat.core.client.dispatcher import OutboundDispatcher
from CostumeChat.core.client.store import ConversationStore, PresenceTracker, TypingTracker
from CostumeChat.core.client.utils.exceptions import ProtocolError
from CostumeChat.core.logging import get_logger
from CostumeChat.core.message.protocol import (
    CostumeReference,
    Message,
    MessageKind,
    new_client_id,
    utcnow,
)

logger = get_logger(__name__)


class ChatClient:
    """
    Messaging for one signed-in user.

    Args:
        store: Conversation store to use; a new one is created when omitted
        api: REST client; built from configuration when omitted
        url, connector, auto_reconnect: forwarded to ``ConnectionManager``
    """

    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        api: Optional[CostumeChatAPIClient] = None,
        url: Optional[str] = None,
        connector: Optional[Connector] = None,
        auto_reconnect: Optional[bool] = None,
    ):
        self.store = store or ConversationStore()
        self.presence = PresenceTracker()
        self.typing = TypingTracker()
        self.api = api or CostumeChatAPIClient()
        self.connection = ConnectionManager(
            self.store,
            self.presence,
            self.typing,
            url=url,
            connector=connector,
            auto_reconnect=auto_reconnect,
        )
        self.dispatcher = OutboundDispatcher(self.connection)

    @property
    def user_id(self) -> Optional[str]:
        return self.connection.user_id

    @property
    def display_name(self) -> Optional[str]:
        return self.connection.display_name

    # ==================== Lifecycle ====================

    async def connect(self, user_id: str, display_name: str = "") -> bool:
        return await self.connection.connect(user_id, display_name)

    async def disconnect(self) -> None:
        await self.connection.disconnect()

    def is_connected(self) -> bool:
        return self.connection.is_connected()

    async def close(self) -> None:
        """Logout: drop the connection, the local history and the HTTP session."""
        await self.connection.disconnect()
        self.store.clear()
        await self.api.close()

    @asynccontextmanager
    async def session(self, user_id: str, display_name: str = ""):
        """Connected for the duration of the block; torn down on every exit path."""
        try:
            await self.connect(user_id, display_name)
            yield self
        finally:
            await self.close()

    # ==================== Sending ====================

    async def send_text(
        self,
        conversation_id: str,
        receiver_id: str,
        body: str,
        receiver_name: str = "",
        costume: Optional[CostumeReference] = None,
    ) -> Optional[Message]:
        """
        Send a text message with an optimistic local echo.

        The optimistic entry is removed again if the message could not be
        handed to the transport.

        Returns:
            The stored message (confirmed if the echo already arrived), or
            None if nothing was sent
        """
        return await self._send(conversation_id, receiver_id, body, receiver_name, MessageKind.TEXT, None, costume)

    async def send_image(
        self,
        conversation_id: str,
        receiver_id: str,
        image_url: str,
        caption: str = "",
        receiver_name: str = "",
    ) -> Optional[Message]:
        """Send an image message; ``caption`` falls back to the URL as body."""
        return await self._send(
            conversation_id, receiver_id, caption or image_url, receiver_name, MessageKind.IMAGE, image_url, None
        )

    async def _send(
        self,
        conversation_id: str,
        receiver_id: str,
        body: str,
        receiver_name: str,
        kind: MessageKind,
        image_url: Optional[str],
        costume: Optional[CostumeReference],
    ) -> Optional[Message]:
        if not self.user_id:
            logger.warning("Cannot send before connecting")
            return None

        temp_id = new_client_id()
        optimistic = Message(
            id=temp_id,
            conversation_id=conversation_id,
            body=body,
            sender_id=self.user_id,
            sender_name=self.display_name or "",
            receiver_id=receiver_id,
            receiver_name=receiver_name,
            kind=kind,
            timestamp=utcnow(),
            image_url=image_url,
            costume=costume,
            client_id=temp_id,
        )
        self.store.insert_optimistic(conversation_id, optimistic)

        payload: Dict[str, Any] = {
            "conversation_id": conversation_id,
            "message": body,
            "sender_id": self.user_id,
            "sender_username": self.display_name,
            "receiver_id": receiver_id,
            "receiver_username": receiver_name,
            "message_type": kind.value,
            "image_url": image_url,
            "client_id": temp_id,
        }
        if costume is not None:
            payload["costume_id"] = costume.id
            payload["costume_name"] = costume.name

        if not await self.dispatcher.send(payload):
            self.store.remove(conversation_id, temp_id)
            return None
        # The echo may already have replaced the optimistic entry.
        for message in self.store.get_messages(conversation_id):
            if message.id == temp_id or message.client_id == temp_id:
                return message
        return optimistic

    async def set_typing(self, conversation_id: str, receiver_id: str, is_typing: bool = True) -> bool:
        if not self.user_id:
            return False
        return await self.dispatcher.send_typing_status({
            "conversation_id": conversation_id,
            "user_id": self.user_id,
            "username": self.display_name,
            "receiver_id": receiver_id,
            "is_typing": is_typing,
        })

    # ==================== History and read state ====================

    async def load_history(self, conversation_id: str, limit: int = 50) -> bool:
        """
        Replace a conversation with the server's history.

        Optimistic entries that the history does not contain yet are kept.

        Returns:
            True if the history was loaded
        """
        response = await self.api.get_conversation_messages(conversation_id, limit=limit)
        if not response.get("success"):
            logger.warning("Could not load history for %s: %s", conversation_id, response.get("message"))
            return False

        history: List[Message] = []
        for row in response.get("data") or []:
            try:
                history.append(Message.from_wire(row))
            except ProtocolError as e:
                logger.warning("Skipping history row: %s", e)

        confirmed_client_ids = {m.client_id for m in history if m.client_id}
        pending = [
            m for m in self.store.pending_messages(conversation_id)
            if m.id not in confirmed_client_ids
        ]
        self.store.replace_all(conversation_id, history + pending)
        return True

    async def mark_conversation_read(self, conversation_id: str) -> bool:
        """Mark the counterparty's messages as read locally and on the server."""
        if not self.user_id:
            return False
        self.store.mark_all_read_from(conversation_id, self.user_id)
        response = await self.api.mark_messages_seen(conversation_id, self.user_id)
        return bool(response.get("success"))

    def expire_pending(self, conversation_id: str, older_than: timedelta) -> List[Message]:
        """Remove optimistic messages that have waited longer than ``older_than``."""
        cutoff = utcnow() - older_than
        expired = [m for m in self.store.pending_messages(conversation_id) if m.timestamp < cutoff]
        for message in expired:
            self.store.remove(conversation_id, message.id)
        if expired:
            logger.info("Expired %d unconfirmed messages in %s", len(expired), conversation_id)
        return expired
