"""
Message protocol module for CostumeChat.
Defines the chat message, typing signal and event envelope exchanged with the messaging server.
"""

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple

from CostumeChat.core.client.utils.constants import CLIENT_ID_PREFIX
from CostumeChat.core.client.utils.exceptions import ProtocolError


class MessageKind(Enum):
    """Kinds of chat message body."""
    TEXT = "text"
    IMAGE = "image"


class DeliveryStatus(Enum):
    """Where a message is in its send lifecycle, as seen by this client."""
    PENDING = "pending"  # Optimistic, not acknowledged yet
    CONFIRMED = "confirmed"  # Accepted or broadcast by the server
    DELIVERED = "delivered"  # Server reported delivery to the receiver
    FAILED = "failed"  # Server rejected the optimistic send


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_client_id() -> str:
    """Temporary id for an optimistic message."""
    return f"{CLIENT_ID_PREFIX}{uuid.uuid4().hex}"


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a wire timestamp into an aware UTC datetime.

    Accepts ISO-8601 strings (``Z`` suffix included), epoch seconds and
    epoch milliseconds. Returns None when the value cannot be parsed.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > 1e12 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _text(value: Any) -> str:
    return "" if value is None else str(value)


@dataclass(frozen=True)
class CostumeReference:
    """Listing a conversation was opened from (inquiry threads)."""
    id: str
    name: str = ""


@dataclass(frozen=True)
class Message:
    """
    One chat message within a conversation.

    Instances are immutable; the conversation store swaps in modified copies.

    Attributes:
        id: Server id once confirmed, ``tmp-`` id while optimistic
        conversation_id: Conversation the message belongs to
        body: Text body, or the caption/reference of an image message
        timestamp: Aware UTC datetime used to order the conversation
        client_id: Temporary id attached on send and echoed by the server
        status: Delivery status as seen by this client
    """
    id: str
    conversation_id: str
    body: str
    sender_id: str
    receiver_id: str = ""
    sender_name: str = ""
    receiver_name: str = ""
    kind: MessageKind = MessageKind.TEXT
    timestamp: datetime = field(default_factory=utcnow)
    is_read: bool = False
    image_url: Optional[str] = None
    costume: Optional[CostumeReference] = None
    client_id: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.CONFIRMED

    def __post_init__(self):
        # Naive datetimes would make mixed logs unsortable.
        ts = parse_timestamp(self.timestamp)
        if ts is None:
            raise ValueError(f"Invalid message timestamp: {self.timestamp!r}")
        if ts is not self.timestamp:
            object.__setattr__(self, "timestamp", ts)

    @property
    def is_confirmed(self) -> bool:
        return self.status not in (DeliveryStatus.PENDING, DeliveryStatus.FAILED)

    @property
    def is_optimistic(self) -> bool:
        return self.id.startswith(CLIENT_ID_PREFIX)

    def to_wire(self) -> Dict[str, Any]:
        """Serialize to the server's JSON payload shape."""
        data: Dict[str, Any] = {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "message": self.body,
            "sender_id": self.sender_id,
            "sender_username": self.sender_name,
            "receiver_id": self.receiver_id,
            "receiver_username": self.receiver_name,
            "message_type": self.kind.value,
            "timestamp": format_timestamp(self.timestamp),
            "is_read": self.is_read,
        }
        if self.image_url:
            data["image_url"] = self.image_url
        if self.costume is not None:
            data["costume_id"] = self.costume.id
            data["costume_name"] = self.costume.name
        if self.client_id:
            data["client_id"] = self.client_id
        return data

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> 'Message':
        """
        Build a confirmed message from a server payload.

        Args:
            data: Decoded ``newMessage`` payload or a history row

        Raises:
            ProtocolError: if the payload is not a mapping or lacks
                ``id``/``conversation_id``
        """
        if not isinstance(data, Mapping):
            raise ProtocolError("Message payload must be an object", {"payload": data})

        message_id = _text(data.get("id")).strip()
        conversation_id = _text(data.get("conversation_id")).strip()
        if not message_id or not conversation_id:
            raise ProtocolError(
                "Message payload is missing id or conversation_id",
                {"id": message_id, "conversation_id": conversation_id},
            )

        try:
            kind = MessageKind(_text(data.get("message_type")) or MessageKind.TEXT.value)
        except ValueError:
            kind = MessageKind.TEXT

        costume = None
        if data.get("costume_id"):
            costume = CostumeReference(id=_text(data["costume_id"]), name=_text(data.get("costume_name")))

        return cls(
            id=message_id,
            conversation_id=conversation_id,
            body=_text(data.get("message")),
            sender_id=_text(data.get("sender_id")),
            receiver_id=_text(data.get("receiver_id")),
            sender_name=_text(data.get("sender_username")),
            receiver_name=_text(data.get("receiver_username")),
            kind=kind,
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
            is_read=bool(data.get("is_read", False)),
            image_url=data.get("image_url") or None,
            costume=costume,
            client_id=data.get("client_id") or None,
            status=DeliveryStatus.CONFIRMED,
        )


@dataclass(frozen=True)
class TypingSignal:
    """Latest is-typing / stopped-typing notice for a conversation."""
    conversation_id: str
    user_id: str
    username: str = ""
    is_typing: bool = True
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> 'TypingSignal':
        if not isinstance(data, Mapping):
            raise ProtocolError("Typing payload must be an object", {"payload": data})
        conversation_id = _text(data.get("conversation_id")).strip()
        if not conversation_id:
            raise ProtocolError("Typing payload is missing conversation_id")
        return cls(
            conversation_id=conversation_id,
            user_id=_text(data.get("user_id")),
            username=_text(data.get("username")),
            is_typing=bool(data.get("is_typing", False)),
            timestamp=parse_timestamp(data.get("timestamp")) or utcnow(),
        )


def encode_event(event: str, data: Any = None) -> str:
    """Serialize an outbound event frame."""
    return json.dumps({"event": event, "data": data if data is not None else {}})


def decode_event(raw: Any) -> Tuple[str, Any]:
    """
    Split an inbound frame into ``(event, data)``.

    Raises:
        ProtocolError: for non-JSON frames or frames without an event name
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ProtocolError("Frame is not valid UTF-8") from e
    try:
        obj = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError("Frame is not valid JSON", {"frame": str(raw)[:200]}) from e

    if not isinstance(obj, dict) or not isinstance(obj.get("event"), str) or not obj["event"]:
        raise ProtocolError("Frame has no event name", {"frame": str(raw)[:200]})
    return obj["event"], obj.get("data")


__all__ = [
    'MessageKind',
    'DeliveryStatus',
    'CostumeReference',
    'Message',
    'TypingSignal',
    'new_client_id',
    'parse_timestamp',
    'format_timestamp',
    'utcnow',
    'encode_event',
    'decode_event',
]
