"""
Tests for the server session registry.
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from websockets.exceptions import ConnectionClosedOK
from websockets.frames import CloseCode

from pie_ipc.ipc.protocol import (
    AlreadyObservingError,
    NotObservingError,
    OpenMenuMessage,
    SelectItemMessage,
)
from pie_ipc_host.session import ObserverRole, SessionRegistry


def make_connection() -> MagicMock:
    """Create a mock server connection."""
    connection = MagicMock()
    connection.remote_address = ("127.0.0.1", 50000)
    connection.send = AsyncMock()
    connection.close = AsyncMock()
    return connection


class TestSession:
    """Tests for Session."""

    async def test_messages_are_written_in_order(self) -> None:
        """Test queued messages reach the connection in send order."""
        connection = make_connection()
        session = SessionRegistry().open_session(connection)

        session.send(OpenMenuMessage())
        session.send(SelectItemMessage(target="item", path=[1]))
        await session.close()

        sent = [json.loads(call.args[0]) for call in connection.send.await_args_list]
        assert sent == [
            {"type": "open-menu"},
            {"type": "select-item", "target": "item", "path": [1]},
        ]
        connection.close.assert_awaited()

    async def test_send_after_close_is_dropped(self) -> None:
        """Test nothing is written once the session closed."""
        connection = make_connection()
        session = SessionRegistry().open_session(connection)
        await session.close()

        session.send(OpenMenuMessage())

        assert session.closed is True
        connection.send.assert_not_awaited()

    async def test_closed_connection_stops_writer(self) -> None:
        """Test a write to a closed connection closes the session."""
        connection = make_connection()
        connection.send.side_effect = ConnectionClosedOK(None, None)
        session = SessionRegistry().open_session(connection)

        session.send(OpenMenuMessage())
        await session.close()

        assert session.closed is True
        assert connection.send.await_count == 1

    async def test_close_is_idempotent(self) -> None:
        """Test closing twice does not fail."""
        session = SessionRegistry().open_session(make_connection())
        await session.close()
        await session.close()
        assert session.closed is True

    async def test_peer(self) -> None:
        """Test the peer address is exposed for logging."""
        session = SessionRegistry().open_session(make_connection())
        assert "127.0.0.1" in session.peer
        await session.close()

    async def test_overflow_closes_connection(self) -> None:
        """Test a client that stops reading is disconnected once its queue fills."""
        connection = make_connection()
        stalled = asyncio.Event()

        async def never_written(data: str) -> None:
            await stalled.wait()

        connection.send.side_effect = never_written
        session = SessionRegistry(outbox_size=2).open_session(connection)

        session.send(OpenMenuMessage())
        session.send(OpenMenuMessage())
        assert session.closed is False

        session.send(SelectItemMessage(target="item", path=[0]))
        assert session.closed is True
        await asyncio.sleep(0)

        connection.close.assert_awaited_with(CloseCode.POLICY_VIOLATION, "Outbox overflow")
        await session.close()

        session.send(OpenMenuMessage())
        assert connection.send.await_count == 0

    async def test_close_with_full_queue(self) -> None:
        """Test closing does not fail when the queue is at its limit."""
        connection = make_connection()
        session = SessionRegistry(outbox_size=1).open_session(connection)
        session.send(OpenMenuMessage())

        await session.close()

        assert session.closed is True
        connection.close.assert_awaited()


class TestSessionRegistry:
    """Tests for SessionRegistry."""

    async def test_observer_ids_are_sequential(self) -> None:
        """Test persistent observers get 1, 2, ... in registration order."""
        registry = SessionRegistry()
        first = registry.open_session(make_connection())
        second = registry.open_session(make_connection())

        assert registry.start_observing(first) == 1
        assert registry.start_observing(second) == 2
        assert first.role is ObserverRole.PERSISTENT
        assert registry.next_observer_id == 3

    async def test_observer_ids_are_never_reused(self) -> None:
        """Test an ID freed by stop is not handed out again."""
        registry = SessionRegistry()
        session = registry.open_session(make_connection())

        assert registry.start_observing(session) == 1
        assert registry.stop_observing(session) == 1
        assert registry.start_observing(session) == 2

    async def test_start_twice(self) -> None:
        """Test a registered session cannot start observing again."""
        registry = SessionRegistry()
        session = registry.open_session(make_connection())
        registry.start_observing(session)

        with pytest.raises(AlreadyObservingError):
            registry.start_observing(session)
        assert registry.next_observer_id == 2

    async def test_start_while_one_time(self) -> None:
        """Test a one-time observer cannot start persistent observing."""
        registry = SessionRegistry()
        session = registry.open_session(make_connection())
        registry.begin_one_time(session)

        with pytest.raises(AlreadyObservingError):
            registry.start_observing(session)

    async def test_stop_without_start(self) -> None:
        """Test stopping an unregistered session fails without side effects."""
        registry = SessionRegistry()
        session = registry.open_session(make_connection())

        with pytest.raises(NotObservingError):
            registry.stop_observing(session)
        assert registry.next_observer_id == 1
        assert session.role is ObserverRole.UNREGISTERED

    async def test_begin_one_time(self) -> None:
        """Test show-menu registers the session as observer 0."""
        registry = SessionRegistry()
        session = registry.open_session(make_connection())

        assert registry.begin_one_time(session) is None
        assert session.role is ObserverRole.ONE_TIME
        assert session.observer_id == 0
        assert registry.next_observer_id == 1

    async def test_begin_one_time_replaces_registration(self) -> None:
        """Test a new menu supersedes the previous registration."""
        registry = SessionRegistry()
        session = registry.open_session(make_connection())
        registry.start_observing(session)

        assert registry.begin_one_time(session) == 1
        assert registry.begin_one_time(session) == 0
        assert session.observer_id == 0

    async def test_scope_changes_on_registration(self) -> None:
        """Test every registration starts a new scope."""
        registry = SessionRegistry()
        session = registry.open_session(make_connection())

        registry.begin_one_time(session)
        scope = session.scope
        assert session.in_scope(scope) is True

        registry.begin_one_time(session)
        assert session.in_scope(scope) is False
        assert session.in_scope(session.scope) is True

        registry.stop_observing(session)
        assert session.in_scope(session.scope) is False

    async def test_close_session(self) -> None:
        """Test closing reports the observer ID for bookkeeping."""
        registry = SessionRegistry()
        observer = registry.open_session(make_connection())
        plain = registry.open_session(make_connection())
        registry.start_observing(observer)

        assert registry.close_session(observer) == 1
        assert registry.close_session(plain) is None
        assert registry.sessions == []

    async def test_stats(self) -> None:
        """Test registry statistics."""
        registry = SessionRegistry()
        first = registry.open_session(make_connection())
        registry.open_session(make_connection())
        registry.start_observing(first)

        stats = registry.get_stats()
        assert stats["active_connections"] == 2
        assert stats["observers"] == {first.session_id: 1}
        assert stats["next_observer_id"] == 2
        assert registry.observers == [first]
