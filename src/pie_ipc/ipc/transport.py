"""
Client transport for the IPC protocol.

The clients only depend on the small :class:`Transport` interface. The one
implementation shipped here, :class:`WebSocketTransport`, talks to the
server over a loopback WebSocket using the ``websockets`` asyncio client.
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from typing import Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from pie_ipc.ipc.protocol import (
    DEFAULT_HOST,
    DEFAULT_OPEN_TIMEOUT,
    MAX_MESSAGE_SIZE,
    ConnectionFailedError,
)
from pie_ipc.logging import get_logger

logger = get_logger(__name__)

MessageCallback = Callable[[str | bytes], None]
ErrorCallback = Callable[[Exception], None]
CloseCallback = Callable[[], None]


def server_url(port: int, host: str = DEFAULT_HOST) -> str:
    """Return the WebSocket URL of an IPC server."""
    return f"ws://{host}:{port}"


class Transport(Protocol):
    """
    Interface between a client and its connection.

    ``open()`` returning is the open notification. After that, inbound
    frames arrive through ``on_message``; a connection lost abnormally is
    reported through ``on_error``, and ``on_close`` fires once the
    connection is gone for any reason.
    """

    on_message: MessageCallback | None
    on_error: ErrorCallback | None
    on_close: CloseCallback | None

    @property
    def is_open(self) -> bool: ...

    async def open(self) -> None: ...

    async def send(self, data: str) -> None: ...

    async def close(self) -> None: ...


class WebSocketTransport:
    """
    WebSocket implementation of :class:`Transport`.

    Attributes:
        url: Server URL (``ws://127.0.0.1:<port>``).
        open_timeout: Seconds to wait for the opening handshake.
    """

    def __init__(
        self,
        url: str,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
        max_size: int = MAX_MESSAGE_SIZE,
    ) -> None:
        """
        Initialize the transport. No connection is made until ``open()``.

        Args:
            url: Server URL.
            open_timeout: Seconds to wait for the opening handshake.
            max_size: Maximum inbound frame size in bytes.
        """
        self.url = url
        self.open_timeout = open_timeout
        self.max_size = max_size

        self.on_message: MessageCallback | None = None
        self.on_error: ErrorCallback | None = None
        self.on_close: CloseCallback | None = None

        self._connection: ClientConnection | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._closing = False

    @property
    def is_open(self) -> bool:
        """Whether the connection is established and not closing."""
        return self._connection is not None and not self._closing

    async def open(self) -> None:
        """
        Open the connection and start reading frames.

        Raises:
            ConnectionFailedError: If the connection cannot be established.
        """
        try:
            self._connection = await connect(
                self.url,
                open_timeout=self.open_timeout,
                max_size=self.max_size,
                proxy=None,
            )
        except (OSError, TimeoutError, WebSocketException) as e:
            logger.debug(
                "WebSocket connection failed",
                extra={"url": self.url, "error": str(e)},
            )
            raise ConnectionFailedError(
                f"Could not connect to {self.url}: {e}",
                details={"url": self.url},
            ) from e

        self._reader_task = asyncio.create_task(self._read_loop())

    async def _read_loop(self) -> None:
        """Forward inbound frames until the connection closes."""
        assert self._connection is not None
        try:
            async for message in self._connection:
                if self.on_message is None:
                    continue
                try:
                    self.on_message(message)
                except Exception:
                    logger.exception("Inbound frame handler failed", extra={"url": self.url})
        except ConnectionClosedError as e:
            if not self._closing:
                logger.warning(
                    "WebSocket connection lost",
                    extra={"url": self.url, "error": str(e)},
                )
                if self.on_error is not None:
                    self.on_error(e)
        finally:
            if self.on_close is not None:
                self.on_close()

    async def send(self, data: str) -> None:
        """
        Send one text frame.

        Raises:
            ConnectionClosed: If the connection is gone.
        """
        if self._connection is None or self._closing:
            raise ConnectionClosed(None, None)
        await self._connection.send(data)

    async def close(self) -> None:
        """Close the connection. Safe to call repeatedly."""
        if self._connection is None or self._closing:
            return

        self._closing = True
        await self._connection.close()

        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
