"""
Connection manager for the messaging websocket.

Owns at most one live connection per signed-in user, runs the receive loop
and routes inbound events to the conversation store and the presence and
typing trackers through a dispatch table.

Transport failures never propagate to callers. They are logged and
published as ``state_changed(False, error)`` on ``events``.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from CostumeChat.config import config
from CostumeChat.core.client.events import EventBus
from CostumeChat.core.client.store import ConversationStore, PresenceTracker, TypingTracker
from CostumeChat.core.client.utils import constants as c
from CostumeChat.core.client.utils.exceptions import ProtocolError
from CostumeChat.core.logging import get_logger
from CostumeChat.core.message.protocol import (
    DeliveryStatus,
    Message,
    TypingSignal,
    decode_event,
    encode_event,
    format_timestamp,
    utcnow,
)

logger = get_logger(__name__)

Connector = Callable[[str], Awaitable[Any]]

_CONNECT_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException, ValueError)


def build_socket_url(base_url: str, user_id: str, username: str) -> str:
    """Append the ``userId``/``username`` session parameters to the endpoint URL."""
    parts = urlsplit(base_url)
    query = [(k, v) for k, v in parse_qsl(parts.query) if k not in ("userId", "username")]
    query += [("userId", user_id), ("username", username)]
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


async def _websocket_connector(url: str, timeout: float) -> Any:
    return await websockets.connect(url, open_timeout=timeout)


class ConnectionManager:
    """
    Lifecycle of the messaging connection plus inbound event handling.

    Args:
        store: Conversation store updated by inbound messages
        presence: Tracker replaced by ``onlineUsers`` snapshots
        typing: Tracker updated by ``userTypingStatus`` signals
        url: Websocket endpoint; defaults to ``config.SOCKET_URL``
        connector: ``async (url) -> connection``; the connection needs
            ``send``, ``recv`` and ``close`` coroutines. Defaults to
            ``websockets.connect``.
        auto_reconnect: Reconnect with capped exponential backoff after an
            unexpected drop
    """

    def __init__(
        self,
        store: ConversationStore,
        presence: PresenceTracker,
        typing: TypingTracker,
        url: Optional[str] = None,
        connector: Optional[Connector] = None,
        auto_reconnect: Optional[bool] = None,
        reconnect_delay: float = c.RECONNECT_DELAY_SECONDS,
        max_reconnect_delay: float = c.RECONNECT_MAX_DELAY_SECONDS,
        max_reconnect_attempts: int = c.MAX_RECONNECT_ATTEMPTS,
        connect_timeout: Optional[float] = None,
    ):
        self.store = store
        self.presence = presence
        self.typing = typing
        self.url = url or config.SOCKET_URL
        timeout = connect_timeout if connect_timeout is not None else config.CONNECT_TIMEOUT_SECONDS
        self._connector: Connector = connector or (lambda u: _websocket_connector(u, timeout))
        self.auto_reconnect = config.AUTO_RECONNECT if auto_reconnect is None else auto_reconnect
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts

        self.events = EventBus()
        self.last_error: Optional[BaseException] = None
        self.last_pong = None
        self.session_info: Dict[str, Any] = {}

        self._ws: Any = None
        self._identity: Optional[Tuple[str, str]] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        # Bumped by disconnect(); an open that started earlier discards its socket.
        self._generation = 0
        self._connect_lock: Optional[asyncio.Lock] = None

        self._handlers: Dict[str, Callable[[Any], None]] = {
            c.EVENT_WELCOME: self._on_welcome,
            c.EVENT_ONLINE_USERS: self._on_online_users,
            c.EVENT_NEW_MESSAGE: self._on_new_message,
            c.EVENT_TYPING_STATUS: self._on_typing_status,
            c.EVENT_MESSAGE_DELIVERED: self._on_message_delivered,
            c.EVENT_MESSAGE_READ: self._on_message_read,
            c.EVENT_MESSAGE_ERROR: self._on_message_error,
            c.EVENT_PONG: self._on_pong,
        }

    # ==================== Lifecycle ====================

    @property
    def user_id(self) -> Optional[str]:
        return self._identity[0] if self._identity else None

    @property
    def display_name(self) -> Optional[str]:
        return self._identity[1] if self._identity else None

    def is_connected(self) -> bool:
        return self._ws is not None

    async def connect(self, user_id: str, display_name: str = "") -> bool:
        """
        Open the connection for a signed-in user.

        Calling again for the same user while connected is a no-op; a
        different user forces a clean reconnect. Overlapping calls are
        serialized, so at most one socket is ever open.

        Returns:
            True if a connection is live afterwards
        """
        if not user_id:
            logger.error("Cannot connect without a user id")
            return False
        identity = (user_id, display_name or user_id)

        if self._connect_lock is None:
            self._connect_lock = asyncio.Lock()
        async with self._connect_lock:
            if self._identity == identity and self.is_connected():
                return True
            if self._identity is not None:
                await self.disconnect()

            self._identity = identity
            return await self._open()

    async def disconnect(self) -> None:
        """
        Close the connection and clear presence and typing state.

        A connect still waiting for the server is abandoned; its socket is
        closed as soon as it opens.
        """
        self._generation += 1
        self._identity = None

        task, self._reconnect_task = self._reconnect_task, None
        await self._cancel(task)

        ws, self._ws = self._ws, None
        task, self._receive_task = self._receive_task, None
        await self._cancel(task)
        if ws is not None:
            await self._close_socket(ws)

        self._clear_live_state()
        if ws is not None:
            logger.info("Disconnected from messaging server")
            self.events.emit(c.STATE_CHANGED, False, None)

    @asynccontextmanager
    async def session(self, user_id: str, display_name: str = ""):
        """Connect for the duration of the block; always disconnects on exit."""
        try:
            await self.connect(user_id, display_name)
            yield self
        finally:
            await self.disconnect()

    async def _open(self) -> bool:
        generation, identity = self._generation, self._identity
        user_id, display_name = identity
        url = build_socket_url(self.url, user_id, display_name)
        logger.info("Connecting to messaging server as %s", user_id)
        try:
            ws = await self._connector(url)
        except _CONNECT_ERRORS as e:
            if generation != self._generation:
                return False
            logger.warning("Connection to %s failed: %s", self.url, e)
            self.last_error = e
            self.events.emit(c.STATE_CHANGED, False, e)
            return False

        if generation != self._generation or self._identity != identity or self._ws is not None:
            logger.info("Connection for %s was superseded while opening, closing it", user_id)
            await self._close_socket(ws)
            return False

        self._ws = ws
        self.last_error = None
        self._receive_task = asyncio.create_task(self._receive_loop(ws))
        logger.info("Connected to messaging server")
        self.events.emit(c.STATE_CHANGED, True, None)
        return True

    @staticmethod
    async def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    @staticmethod
    async def _close_socket(ws: Any) -> None:
        try:
            await ws.close()
        except Exception:
            logger.debug("Error while closing websocket", exc_info=True)

    def _clear_live_state(self) -> None:
        self.presence.clear()
        self.typing.clear()

    # ==================== Receive path ====================

    async def _receive_loop(self, ws: Any) -> None:
        error: Optional[BaseException] = None
        try:
            while True:
                raw = await ws.recv()
                self.handle_frame(raw)
        except ConnectionClosed as e:
            logger.info("Messaging connection closed: %s", e)
        except (OSError, WebSocketException) as e:
            logger.warning("Messaging connection failed: %s", e)
            error = e
        except Exception as e:
            logger.exception("Receive loop failed")
            error = e
        self._connection_lost(ws, error)

    def _connection_lost(self, ws: Any, error: Optional[BaseException]) -> None:
        if ws is not self._ws:
            return
        self._ws = None
        task, self._receive_task = self._receive_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self.last_error = error
        self._clear_live_state()
        self.events.emit(c.STATE_CHANGED, False, error)

        if self.auto_reconnect and self._identity is not None:
            self._reconnect_task = asyncio.create_task(self._reconnect())

    async def _reconnect(self) -> None:
        delay = self.reconnect_delay
        for attempt in range(1, self.max_reconnect_attempts + 1):
            await asyncio.sleep(delay)
            if self._identity is None or self.is_connected():
                return
            logger.info("Reconnect attempt %d/%d", attempt, self.max_reconnect_attempts)
            if await self._open():
                self._reconnect_task = None
                return
            delay = min(delay * 2, self.max_reconnect_delay)
        logger.warning("Giving up after %d reconnect attempts", self.max_reconnect_attempts)
        self._reconnect_task = None

    def handle_frame(self, raw: Any) -> None:
        """Decode one inbound frame and run its handler. Bad frames are dropped."""
        try:
            event, data = decode_event(raw)
        except ProtocolError as e:
            logger.warning("Dropping malformed frame: %s", e)
            return

        handler = self._handlers.get(event)
        if handler is None:
            logger.debug("No handler for event '%s'", event)
            return
        try:
            handler(data)
        except ProtocolError as e:
            logger.warning("Dropping invalid '%s' payload: %s", event, e)
        except Exception:
            logger.exception("Handler for '%s' failed", event)

    def _on_welcome(self, data: Any) -> None:
        self.session_info = dict(data) if isinstance(data, dict) else {}
        logger.info("Welcome from messaging server: %s", self.session_info)
        self.events.emit(c.WELCOME_RECEIVED, self.session_info)

    def _on_online_users(self, data: Any) -> None:
        users = data.get("users") if isinstance(data, dict) else None
        self.presence.apply_presence_snapshot(users)

    def _on_new_message(self, data: Any) -> None:
        message = Message.from_wire(data)
        if self.store.insert_confirmed(message.conversation_id, message):
            self.events.emit(c.MESSAGE_RECEIVED, message)

    def _on_typing_status(self, data: Any) -> None:
        signal = TypingSignal.from_wire(data)
        self.typing.apply_typing_signal(signal.conversation_id, signal)

    def _on_message_delivered(self, data: Any) -> None:
        if not isinstance(data, dict):
            raise ProtocolError("Delivery payload must be an object")
        conversation_id = data.get("conversation_id")
        message_id = data.get("message_id") or data.get("id")
        if conversation_id and message_id:
            self.store.update(conversation_id, message_id, status=DeliveryStatus.DELIVERED)
        self.events.emit(c.MESSAGE_DELIVERED, data)

    def _on_message_read(self, data: Any) -> None:
        # The reader's counterparty messages become read.
        if not isinstance(data, dict):
            raise ProtocolError("Read payload must be an object")
        conversation_id = data.get("conversation_id")
        reader_id = data.get("reader_id") or data.get("user_id")
        if conversation_id and reader_id:
            self.store.mark_all_read_from(conversation_id, reader_id)
        self.events.emit(c.MESSAGE_READ, data)

    def _on_message_error(self, data: Any) -> None:
        data = data if isinstance(data, dict) else {"message": data}
        logger.error("Message error from server: %s", data.get("message"))
        conversation_id = data.get("conversation_id")
        client_id = data.get("client_id")
        if conversation_id and client_id:
            self.store.update(conversation_id, client_id, status=DeliveryStatus.FAILED)
        self.events.emit(c.MESSAGE_ERROR, data)

    def _on_pong(self, data: Any) -> None:
        self.last_pong = utcnow()
        self.events.emit(c.PONG_RECEIVED, data)

    # ==================== Send path ====================

    async def emit(self, event: str, data: Dict[str, Any]) -> bool:
        """
        Transmit one event frame.

        Fails fast when disconnected; nothing is queued for later.

        Returns:
            True if the frame was handed to the transport
        """
        ws = self._ws
        if ws is None:
            logger.warning("Not connected, cannot send '%s'", event)
            return False
        frame = encode_event(event, data)
        try:
            await ws.send(frame)
        except (ConnectionClosed, OSError, WebSocketException) as e:
            logger.warning("Sending '%s' failed: %s", event, e)
            self._connection_lost(ws, e)
            return False
        except Exception as e:
            logger.exception("Sending '%s' failed", event)
            self._connection_lost(ws, e)
            return False
        return True

    async def ping(self) -> bool:
        """Health check; the reply arrives as a ``pong`` event."""
        return await self.emit(c.EVENT_PING, {"timestamp": format_timestamp(utcnow())})
