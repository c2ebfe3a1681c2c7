"""
Tests for the connection manager.

Tests cover:
- Connect/disconnect lifecycle and identity handling
- Inbound event routing into the store and trackers
- Malformed frames
- Connection failures, drops and reconnection
- Overlapping connect/disconnect calls
"""

import asyncio
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlsplit

import pytest

from CostumeChat.core.client.connection import ConnectionManager, build_socket_url
from CostumeChat.core.client.utils import constants as c
from CostumeChat.core.message.protocol import DeliveryStatus

from .conftest import drain, make_message, make_optimistic, wire_message


def test_build_socket_url_adds_session_params():
    url = build_socket_url("ws://chat.test/ws?v=2&userId=old", "u1", "Alice Smith")
    parts = urlsplit(url)
    assert parts.path == "/ws"
    assert parse_qs(parts.query) == {"v": ["2"], "userId": ["u1"], "username": ["Alice Smith"]}


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_connect_opens_one_connection(self, manager, connector):
        listener = MagicMock()
        manager.events.on(c.STATE_CHANGED, listener)

        assert await manager.connect("u1", "alice") is True

        assert manager.is_connected()
        assert len(connector.sockets) == 1
        assert parse_qs(urlsplit(connector.last.url).query) == {"userId": ["u1"], "username": ["alice"]}
        listener.assert_called_once_with(True, None)
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connect_again_same_user_is_noop(self, manager, connector):
        await manager.connect("u1", "alice")
        assert await manager.connect("u1", "alice") is True
        assert len(connector.sockets) == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_connect_as_other_user_reconnects_cleanly(self, manager, connector):
        await manager.connect("u1", "alice")
        first = connector.last
        await manager.connect("u2", "bob")

        assert first.closed
        assert len(connector.sockets) == 2
        assert manager.user_id == "u2"
        assert manager.is_connected()
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_empty_user_id_is_rejected(self, manager, connector):
        assert await manager.connect("", "alice") is False
        assert connector.sockets == []
        assert not manager.is_connected()

    @pytest.mark.asyncio
    async def test_disconnect_when_not_connected_is_safe(self, manager):
        await manager.disconnect()
        assert not manager.is_connected()

    @pytest.mark.asyncio
    async def test_disconnect_clears_live_state(self, manager, connector, presence, typing_tracker, store):
        await manager.connect("u1", "alice")
        ws = connector.last
        ws.push(c.EVENT_ONLINE_USERS, {"users": ["u1", "u2"], "count": 2})
        ws.push(c.EVENT_TYPING_STATUS, {"conversation_id": "c1", "user_id": "u2", "is_typing": True})
        ws.push(c.EVENT_TYPING_STATUS, {"conversation_id": "c2", "user_id": "u3", "is_typing": True})
        ws.push(c.EVENT_NEW_MESSAGE, wire_message("srv-1"))
        await drain()
        assert presence.count == 2
        assert len(typing_tracker) == 2

        await manager.disconnect()

        assert not manager.is_connected()
        assert ws.closed
        assert presence.online_users == frozenset()
        assert typing_tracker.snapshot() == {}
        # History outlives the connection.
        assert [m.id for m in store.get_messages("c1")] == ["srv-1"]

    @pytest.mark.asyncio
    async def test_session_disconnects_on_error(self, manager, connector):
        with pytest.raises(RuntimeError):
            async with manager.session("u1", "alice"):
                assert manager.is_connected()
                raise RuntimeError("ui crashed")
        assert not manager.is_connected()
        assert connector.last.closed


class TestInboundEvents:

    @pytest.mark.asyncio
    async def test_new_message_goes_to_store_once(self, manager, connector, store):
        received = MagicMock()
        manager.events.on(c.MESSAGE_RECEIVED, received)
        await manager.connect("u1")
        connector.last.push(c.EVENT_NEW_MESSAGE, wire_message("srv-1", 5))
        connector.last.push(c.EVENT_NEW_MESSAGE, wire_message("srv-1", 5))
        connector.last.push(c.EVENT_NEW_MESSAGE, wire_message("srv-0", 1))
        await drain()

        assert [m.id for m in store.get_messages("c1")] == ["srv-0", "srv-1"]
        assert received.call_count == 2
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_echo_reconciles_optimistic_message(self, manager, connector, store):
        await manager.connect("u1")
        store.insert_optimistic("c1", make_optimistic("tmp-1", 0, sender_id="u1"))
        connector.last.push(c.EVENT_NEW_MESSAGE, wire_message("srv-9", 0.5, sender_id="u1", client_id="tmp-1"))
        await drain()

        assert [m.id for m in store.get_messages("c1")] == ["srv-9"]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_presence_snapshot_replaces(self, manager, connector, presence):
        await manager.connect("u1")
        connector.last.push(c.EVENT_ONLINE_USERS, {"users": ["u1", "u2"], "count": 2})
        connector.last.push(c.EVENT_ONLINE_USERS, {"users": ["u3"], "count": 1})
        await drain()
        assert presence.online_users == frozenset({"u3"})

        connector.last.push(c.EVENT_ONLINE_USERS, {"count": 0})
        await drain()
        assert presence.online_users == frozenset()
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_typing_signals(self, manager, connector, typing_tracker):
        await manager.connect("u1")
        ws = connector.last
        ws.push(c.EVENT_TYPING_STATUS, {"conversation_id": "c1", "user_id": "u2", "is_typing": True})
        ws.push(c.EVENT_TYPING_STATUS, {"conversation_id": "c1", "user_id": "u3", "is_typing": True})
        await drain()
        assert typing_tracker.get("c1").user_id == "u3"

        ws.push(c.EVENT_TYPING_STATUS, {"conversation_id": "c1", "user_id": "u3", "is_typing": False})
        await drain()
        assert typing_tracker.get("c1") is None
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_delivery_read_and_error_events(self, manager, connector, store):
        await manager.connect("u1")
        store.insert_confirmed("c1", make_message("srv-1", 1, sender_id="u1"))
        store.insert_confirmed("c1", make_message("srv-2", 2, sender_id="u2"))
        store.insert_optimistic("c1", make_optimistic("tmp-3", 3, sender_id="u1"))
        errors = MagicMock()
        manager.events.on(c.MESSAGE_ERROR, errors)

        ws = connector.last
        ws.push(c.EVENT_MESSAGE_DELIVERED, {"conversation_id": "c1", "message_id": "srv-1"})
        ws.push(c.EVENT_MESSAGE_READ, {"conversation_id": "c1", "reader_id": "u2"})
        ws.push(c.EVENT_MESSAGE_ERROR, {"conversation_id": "c1", "client_id": "tmp-3", "message": "blocked"})
        await drain()

        assert store.get_message("c1", "srv-1").status is DeliveryStatus.DELIVERED
        assert store.get_message("c1", "srv-1").is_read is True
        assert store.get_message("c1", "srv-2").is_read is False
        assert store.get_message("c1", "tmp-3").status is DeliveryStatus.FAILED
        errors.assert_called_once()
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_welcome_and_pong(self, manager, connector):
        await manager.connect("u1")
        connector.last.push(c.EVENT_WELCOME, {"socket_id": "abc"})
        connector.last.push(c.EVENT_PONG, {})
        await drain()
        assert manager.session_info == {"socket_id": "abc"}
        assert manager.last_pong is not None

        assert await manager.ping() is True
        assert len(connector.last.sent_events(c.EVENT_PING)) == 1
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_malformed_frames_do_not_stop_receive_loop(self, manager, connector, store):
        await manager.connect("u1")
        ws = connector.last
        ws.push_raw("not json")
        ws.push_raw('{"no": "event"}')
        ws.push(c.EVENT_NEW_MESSAGE, {"message": "no id"})
        ws.push("someFutureEvent", {"x": 1})
        ws.push(c.EVENT_NEW_MESSAGE, wire_message("srv-1"))
        await drain()

        assert manager.is_connected()
        assert [m.id for m in store.get_messages("c1")] == ["srv-1"]
        await manager.disconnect()


class TestFailures:

    @pytest.mark.asyncio
    async def test_connection_error_is_reported_not_raised(self, manager, connector):
        listener = MagicMock()
        manager.events.on(c.STATE_CHANGED, listener)
        connector.failures = 1

        assert await manager.connect("u1") is False

        assert not manager.is_connected()
        assert isinstance(manager.last_error, OSError)
        connected, error = listener.call_args.args
        assert connected is False
        assert isinstance(error, OSError)

        assert await manager.connect("u1") is True
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_server_drop_clears_state_and_send_fails_fast(self, manager, connector, presence):
        await manager.connect("u1")
        connector.last.push(c.EVENT_ONLINE_USERS, {"users": ["u2"]})
        await drain()
        connector.last.drop()
        await drain()

        assert not manager.is_connected()
        assert presence.count == 0
        assert await manager.emit(c.EVENT_SEND_MESSAGE, {"message": "hi"}) is False
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_send_on_closed_socket_reports_failure(self, manager, connector):
        await manager.connect("u1")
        connector.last.closed = True
        assert await manager.emit(c.EVENT_SEND_MESSAGE, {"message": "hi"}) is False
        assert not manager.is_connected()
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_auto_reconnect_after_drop(self, store, presence, typing_tracker, connector):
        manager = ConnectionManager(
            store, presence, typing_tracker,
            url="ws://chat.test/ws",
            connector=connector,
            auto_reconnect=True,
            reconnect_delay=0,
            max_reconnect_attempts=3,
        )
        states = []
        manager.events.on(c.STATE_CHANGED, lambda connected, error: states.append(connected))

        await manager.connect("u1", "alice")
        connector.failures = 1
        connector.last.drop()
        for _ in range(10):
            await drain()
            if manager.is_connected():
                break

        assert manager.is_connected()
        assert len(connector.sockets) == 2
        assert states == [True, False, False, True]
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_cancels_pending_reconnect(self, store, presence, typing_tracker, connector):
        manager = ConnectionManager(
            store, presence, typing_tracker,
            url="ws://chat.test/ws",
            connector=connector,
            auto_reconnect=True,
            reconnect_delay=60,
        )
        await manager.connect("u1")
        connector.last.drop()
        await drain()
        assert manager._reconnect_task is not None

        await manager.disconnect()
        await asyncio.sleep(0)
        assert manager._reconnect_task is None
        assert len(connector.sockets) == 1


class TestOverlappingCalls:

    @pytest.mark.asyncio
    async def test_concurrent_connects_open_one_socket(self, manager, connector):
        connector.gate = asyncio.Event()
        first = asyncio.create_task(manager.connect("u1", "alice"))
        second = asyncio.create_task(manager.connect("u1", "alice"))
        await drain()
        connector.gate.set()

        assert await asyncio.gather(first, second) == [True, True]
        assert len(connector.sockets) == 1

        await manager.disconnect()
        assert all(ws.closed for ws in connector.sockets)

    @pytest.mark.asyncio
    async def test_concurrent_connects_as_different_users_keep_the_last(self, manager, connector):
        connector.gate = asyncio.Event()
        first = asyncio.create_task(manager.connect("u1", "alice"))
        second = asyncio.create_task(manager.connect("u2", "bob"))
        await drain()
        connector.gate.set()
        await asyncio.gather(first, second)

        assert manager.user_id == "u2"
        assert [ws.closed for ws in connector.sockets] == [True, False]
        await manager.disconnect()
        assert all(ws.closed for ws in connector.sockets)

    @pytest.mark.asyncio
    async def test_disconnect_while_connecting_wins(self, manager, connector):
        states = []
        manager.events.on(c.STATE_CHANGED, lambda connected, error: states.append(connected))
        connector.gate = asyncio.Event()
        pending = asyncio.create_task(manager.connect("u1", "alice"))
        await drain()

        await manager.disconnect()
        connector.gate.set()

        assert await pending is False
        assert not manager.is_connected()
        assert manager.user_id is None
        assert connector.last.closed
        assert states == []

    @pytest.mark.asyncio
    async def test_connect_after_abandoned_attempt(self, manager, connector):
        connector.gate = asyncio.Event()
        pending = asyncio.create_task(manager.connect("u1"))
        await drain()
        await manager.disconnect()
        connector.gate.set()
        await pending

        assert await manager.connect("u1") is True
        assert manager.is_connected()
        assert [ws.closed for ws in connector.sockets] == [True, False]
        await manager.disconnect()


class TestReceiveLoopErrors:

    @pytest.mark.asyncio
    async def test_unexpected_transport_error_is_reported_as_state(self, manager, connector, presence, typing_tracker):
        states = []
        manager.events.on(c.STATE_CHANGED, lambda connected, error: states.append((connected, error)))
        await manager.connect("u1")
        ws = connector.last
        ws.push(c.EVENT_ONLINE_USERS, {"users": ["u2"]})
        ws.push(c.EVENT_TYPING_STATUS, {"conversation_id": "c1", "user_id": "u2", "is_typing": True})
        boom = RuntimeError("cannot call recv while another coroutine is already waiting")
        ws.fail(boom)
        await drain()

        assert not manager.is_connected()
        assert manager.last_error is boom
        assert presence.count == 0
        assert len(typing_tracker) == 0
        assert states[-1] == (False, boom)
        await manager.disconnect()

    @pytest.mark.asyncio
    async def test_unexpected_send_error_marks_connection_lost(self, manager, connector):
        await manager.connect("u1")

        async def broken_send(data):
            raise RuntimeError("transport gone")

        connector.last.send = broken_send
        assert await manager.emit(c.EVENT_PING, {}) is False
        assert not manager.is_connected()
        await manager.disconnect()
