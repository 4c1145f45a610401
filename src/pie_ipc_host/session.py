"""
Per-connection state of the IPC server.

Each accepted WebSocket connection is wrapped in a :class:`Session`, which
records the connection's observer role and serialises its outbound frames.
The :class:`SessionRegistry` owns all sessions of one server, applies the
role transitions and hands out observer IDs.

Role transitions:
- UNREGISTERED -> ONE_TIME      on show-menu (from any role)
- UNREGISTERED -> PERSISTENT    on start-observing
- ONE_TIME/PERSISTENT -> UNREGISTERED on stop-observing, on the end of a
  one-time interaction, or when the connection closes
"""

from __future__ import annotations

import asyncio
import contextlib
from enum import Enum
from typing import Any

from websockets.asyncio.server import ServerConnection
from websockets.exceptions import ConnectionClosed
from websockets.frames import CloseCode

from pie_ipc.ipc.protocol import (
    MAX_QUEUED_EVENTS,
    ONE_TIME_OBSERVER_ID,
    AlreadyObservingError,
    IPCMessage,
    NotObservingError,
)
from pie_ipc.logging import get_logger

logger = get_logger(__name__)


class ObserverRole(Enum):
    """Observer role of a connection."""

    UNREGISTERED = "unregistered"
    ONE_TIME = "one-time-observer"
    PERSISTENT = "persistent-observer"


class Session:
    """
    Server side of one client connection.

    Outbound messages are queued and written by a single task, so they reach
    the client in the order ``send()`` was called. A client that stops
    reading fills the bounded queue; the session then closes the connection
    with a policy-violation code instead of buffering without limit.

    Attributes:
        session_id: Server-unique connection number, for logging.
        role: Current observer role.
        observer_id: Observer ID while registered, None otherwise.
        scope: Incremented on every registration; callbacks handed to the
            host are bound to the scope they were created in.
    """

    def __init__(
        self,
        connection: ServerConnection,
        session_id: int,
        outbox_size: int = MAX_QUEUED_EVENTS,
    ) -> None:
        """
        Initialize the session and start its writer task.

        Args:
            connection: The accepted WebSocket connection.
            session_id: Server-unique connection number.
            outbox_size: Frames that may wait for delivery before the
                connection is dropped.
        """
        self.connection = connection
        self.session_id = session_id
        self.role = ObserverRole.UNREGISTERED
        self.observer_id: int | None = None
        self.scope = 0

        self._closed = False
        self._outbox: asyncio.Queue[str | None] = asyncio.Queue(maxsize=outbox_size)
        self._writer_task = asyncio.create_task(self._write_loop())
        self._overflow_task: asyncio.Task[None] | None = None

    @property
    def peer(self) -> str:
        """Remote address of the connection."""
        return str(self.connection.remote_address or "unknown")

    @property
    def closed(self) -> bool:
        """Whether the session no longer delivers messages."""
        return self._closed

    @property
    def is_observing(self) -> bool:
        """Whether the connection is registered as an observer."""
        return self.role is not ObserverRole.UNREGISTERED

    def in_scope(self, scope: int) -> bool:
        """Whether a registration created in ``scope`` is still the current one."""
        return not self._closed and self.is_observing and self.scope == scope

    def send(self, message: IPCMessage) -> None:
        """
        Queue a message for delivery. Must be called on the server's loop.

        Messages queued after the connection closed are dropped.
        """
        if self._closed:
            return
        try:
            self._outbox.put_nowait(message.to_json())
        except asyncio.QueueFull:
            logger.warning(
                "Client is not reading, closing connection",
                extra={"session": self.session_id, "queued": self._outbox.qsize()},
            )
            self._closed = True
            self._writer_task.cancel()
            self._overflow_task = asyncio.create_task(
                self.connection.close(CloseCode.POLICY_VIOLATION, "Outbox overflow")
            )

    async def _write_loop(self) -> None:
        """Write queued frames until the session closes."""
        while True:
            data = await self._outbox.get()
            if data is None:
                return
            try:
                await self.connection.send(data)
            except ConnectionClosed:
                self._closed = True
                return

            logger.debug(
                "IPC message sent",
                extra={"session": self.session_id, "size": len(data)},
            )

    async def close(self) -> None:
        """Flush queued frames and close the connection."""
        if not self._closed:
            self._closed = True
            try:
                self._outbox.put_nowait(None)
            except asyncio.QueueFull:
                self._writer_task.cancel()

        if self._writer_task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await self._writer_task

        await self.connection.close()


class SessionRegistry:
    """
    Owner of all sessions of one server and of the observer ID counter.

    Persistent observers get IDs 1, 2, 3, ... in registration order; IDs
    are never reused while the registry lives. One-time observers always
    have ID 0.
    """

    def __init__(self, outbox_size: int = MAX_QUEUED_EVENTS) -> None:
        """Initialize an empty registry."""
        self.outbox_size = outbox_size
        self._sessions: dict[int, Session] = {}
        self._next_session_id = 1
        self._next_observer_id = 1

    @property
    def sessions(self) -> list[Session]:
        """Open sessions, in accept order."""
        return list(self._sessions.values())

    @property
    def observers(self) -> list[Session]:
        """Sessions currently registered as observers."""
        return [s for s in self._sessions.values() if s.is_observing]

    @property
    def next_observer_id(self) -> int:
        """ID the next persistent observer will receive."""
        return self._next_observer_id

    def open_session(self, connection: ServerConnection) -> Session:
        """Create and track the session of a newly accepted connection."""
        session = Session(connection, self._next_session_id, self.outbox_size)
        self._next_session_id += 1
        self._sessions[session.session_id] = session
        return session

    def close_session(self, session: Session) -> int | None:
        """
        Stop tracking a session whose connection has closed.

        Returns:
            The observer ID the session was registered with, or None. The
            caller reports it to the host as a stop-observing.
        """
        self._sessions.pop(session.session_id, None)
        if not session.is_observing:
            return None
        return self.stop_observing(session)

    def begin_one_time(self, session: Session) -> int | None:
        """
        Register a session as the one-time observer of a new menu.

        This always succeeds and replaces any registration the session had.

        Returns:
            The observer ID of the replaced registration, or None.
        """
        previous = session.observer_id if session.is_observing else None
        self._register(session, ObserverRole.ONE_TIME, ONE_TIME_OBSERVER_ID)
        return previous

    def start_observing(self, session: Session) -> int:
        """
        Register a session as a persistent observer.

        Returns:
            The new observer ID.

        Raises:
            AlreadyObservingError: If the session is already registered.
        """
        if session.is_observing:
            raise AlreadyObservingError(
                "Client is already registered as an observer",
                details={"observer_id": session.observer_id},
            )

        observer_id = self._next_observer_id
        self._next_observer_id += 1
        self._register(session, ObserverRole.PERSISTENT, observer_id)
        return observer_id

    def stop_observing(self, session: Session) -> int:
        """
        Return a session to the unregistered role.

        Returns:
            The observer ID the session was registered with.

        Raises:
            NotObservingError: If the session is not registered.
        """
        if not session.is_observing or session.observer_id is None:
            raise NotObservingError("Client is not registered as an observer")

        observer_id = session.observer_id
        session.role = ObserverRole.UNREGISTERED
        session.observer_id = None
        logger.debug(
            "Observer unregistered",
            extra={"session": session.session_id, "observer_id": observer_id},
        )
        return observer_id

    def _register(self, session: Session, role: ObserverRole, observer_id: int) -> None:
        session.role = role
        session.observer_id = observer_id
        session.scope += 1
        logger.debug(
            "Observer registered",
            extra={
                "session": session.session_id,
                "role": role.value,
                "observer_id": observer_id,
            },
        )

    def get_stats(self) -> dict[str, Any]:
        """Return counters for diagnostics."""
        return {
            "active_connections": len(self._sessions),
            "observers": {
                s.session_id: s.observer_id for s in self._sessions.values() if s.is_observing
            },
            "next_observer_id": self._next_observer_id,
        }
