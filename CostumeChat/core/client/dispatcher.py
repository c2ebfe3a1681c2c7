"""
Outbound message dispatcher.

Validates send and typing payloads and hands them to the connection
manager. Invalid payloads are reported as ``False``; nothing is sent.
"""

from typing import Any, Dict, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from CostumeChat.core.client.connection import ConnectionManager
from CostumeChat.core.client.utils.constants import EVENT_SEND_MESSAGE, EVENT_USER_TYPING
from CostumeChat.core.logging import get_logger
from CostumeChat.core.message.protocol import format_timestamp, utcnow

logger = get_logger(__name__)


class SendMessageRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str = Field(min_length=1)
    message: str = Field(min_length=1)
    sender_id: str = Field(min_length=1)
    receiver_id: str = Field(min_length=1)
    sender_username: str = ""
    receiver_username: str = ""
    message_type: Literal["text", "image"] = "text"
    image_url: Optional[str] = None
    costume_id: Optional[str] = None
    costume_name: Optional[str] = None
    client_id: Optional[str] = None


class TypingRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    conversation_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    receiver_id: str = Field(min_length=1)
    username: str = ""
    is_typing: bool = True


def _validate(model: type, payload: Mapping[str, Any], what: str) -> Optional[BaseModel]:
    if not isinstance(payload, Mapping):
        logger.error("Rejected %s: payload must be a mapping", what)
        return None
    # Explicit None means "use the default".
    cleaned = {k: v for k, v in payload.items() if v is not None}
    try:
        return model.model_validate(cleaned)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        logger.error("Rejected %s: invalid or missing fields: %s", what, fields)
        return None


class OutboundDispatcher:
    """Sends chat messages and typing signals over a ``ConnectionManager``."""

    def __init__(self, connection: ConnectionManager):
        self.connection = connection

    async def send(self, payload: Mapping[str, Any]) -> bool:
        """
        Validate and transmit a chat message.

        ``conversation_id``, ``message``, ``sender_id`` and ``receiver_id``
        are required. A send timestamp is attached and ``message_type``
        defaults to ``text``.

        Returns:
            True if the message was handed to the transport. Delivery is
            confirmed later by a ``newMessage`` push.
        """
        request = _validate(SendMessageRequest, payload, "message")
        if request is None:
            return False

        data: Dict[str, Any] = request.model_dump(exclude_none=True)
        data["timestamp"] = format_timestamp(utcnow())
        logger.debug("Sending message to conversation %s", request.conversation_id)
        return await self.connection.emit(EVENT_SEND_MESSAGE, data)

    async def send_typing_status(self, payload: Mapping[str, Any]) -> bool:
        """Validate and transmit a typing signal. Fire-and-forget."""
        request = _validate(TypingRequest, payload, "typing status")
        if request is None:
            return False

        data = request.model_dump()
        data["timestamp"] = format_timestamp(utcnow())
        return await self.connection.emit(EVENT_USER_TYPING, data)

    send_typing_signal = send_typing_status
