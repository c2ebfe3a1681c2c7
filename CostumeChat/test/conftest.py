"""
Test configuration and fixtures for the CostumeChat client tests.

Provides:
- An in-memory websocket and connector standing in for the messaging server
- Message factories
- Store, tracker and connection manager fixtures wired the way the client wires them
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

import pytest
from websockets.exceptions import ConnectionClosedOK

from CostumeChat.core.client.connection import ConnectionManager
from CostumeChat.core.client.store import ConversationStore, PresenceTracker, TypingTracker
from CostumeChat.core.logging import LogConfig, configure_logging
from CostumeChat.core.message.protocol import DeliveryStatus, Message

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

_CLOSE = object()


class FakeWebSocket:
    """Server side of one connection: push frames in, read what the client sent."""

    def __init__(self, url: str):
        self.url = url
        self.sent: List[dict] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        if self.closed:
            raise ConnectionClosedOK(None, None)
        self.sent.append(json.loads(data))

    async def recv(self) -> Any:
        item = await self._inbox.get()
        if item is _CLOSE:
            self.closed = True
            raise ConnectionClosedOK(None, None)
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed = True
        self._inbox.put_nowait(_CLOSE)

    def push(self, event: str, data: Any = None) -> None:
        self._inbox.put_nowait(json.dumps({"event": event, "data": data}))

    def push_raw(self, raw: Any) -> None:
        self._inbox.put_nowait(raw)

    def fail(self, error: BaseException) -> None:
        """Make the pending or next recv raise ``error``."""
        self._inbox.put_nowait(error)

    def drop(self) -> None:
        """Server-side close."""
        self._inbox.put_nowait(_CLOSE)

    def sent_events(self, event: str) -> List[dict]:
        return [frame["data"] for frame in self.sent if frame["event"] == event]


class FakeConnector:
    """Stands in for ``websockets.connect``."""

    def __init__(self):
        self.sockets: List[FakeWebSocket] = []
        self.failures = 0
        # When set, connects wait for it before completing.
        self.gate: Optional[asyncio.Event] = None

    async def __call__(self, url: str) -> FakeWebSocket:
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise OSError("connection refused")
        ws = FakeWebSocket(url)
        self.sockets.append(ws)
        return ws

    @property
    def last(self) -> Optional[FakeWebSocket]:
        return self.sockets[-1] if self.sockets else None


async def drain(rounds: int = 5) -> None:
    """Let the receive loop process queued frames."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_message(
    message_id: str,
    offset_seconds: float = 0,
    conversation_id: str = "c1",
    sender_id: str = "u1",
    body: str = "hello",
    **kwargs: Any,
) -> Message:
    kwargs.setdefault("receiver_id", "u2")
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        body=body,
        sender_id=sender_id,
        timestamp=T0 + timedelta(seconds=offset_seconds),
        **kwargs,
    )


def make_optimistic(message_id: str, offset_seconds: float = 0, **kwargs: Any) -> Message:
    kwargs.setdefault("client_id", message_id)
    return make_message(message_id, offset_seconds, status=DeliveryStatus.PENDING, **kwargs)


def wire_message(message_id: str, offset_seconds: float = 0, **overrides: Any) -> dict:
    data = {
        "id": message_id,
        "conversation_id": "c1",
        "message": "hello",
        "sender_id": "u2",
        "sender_username": "bob",
        "receiver_id": "u1",
        "receiver_username": "alice",
        "message_type": "text",
        "timestamp": (T0 + timedelta(seconds=offset_seconds)).isoformat().replace("+00:00", "Z"),
        "is_read": False,
    }
    data.update(overrides)
    return data


@pytest.fixture(scope="session", autouse=True)
def test_logging():
    configure_logging(LogConfig(level="DEBUG", console_output=True, file_output=False))


@pytest.fixture
def store() -> ConversationStore:
    return ConversationStore()


@pytest.fixture
def presence() -> PresenceTracker:
    return PresenceTracker()


@pytest.fixture
def typing_tracker() -> TypingTracker:
    return TypingTracker()


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def manager(store, presence, typing_tracker, connector) -> ConnectionManager:
    return ConnectionManager(
        store,
        presence,
        typing_tracker,
        url="ws://chat.test/ws",
        connector=connector,
        auto_reconnect=False,
        reconnect_delay=0,
    )
