"""
Base class of the reference IPC clients.

This module implements the connection handshake and inbound event handling
shared by :class:`~pie_ipc.ipc.show_menu_client.ShowMenuClient` and
:class:`~pie_ipc.ipc.observer_client.ObserverClient`.

Handshake:
- The caller reads the discovery record and passes its port and API version
- ``init()`` refuses a server whose API version differs from the client's,
  without touching the network
- The client is live as soon as the WebSocket opens; no version message is
  exchanged

After ``init()`` succeeds, failures never raise. They are reported as
``error`` events carrying an :class:`IPCErrorReason`.
"""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Self

from websockets.exceptions import ConnectionClosed

from pie_ipc.ipc.discovery import read_discovery_record
from pie_ipc.ipc.events import EventEmitter
from pie_ipc.ipc.protocol import (
    API_VERSION,
    DEFAULT_HOST,
    DEFAULT_OPEN_TIMEOUT,
    CancelMenuMessage,
    ConnectionFailedError,
    ErrorMessage,
    EventMessage,
    HoverItemMessage,
    IPCErrorReason,
    IPCMessage,
    MalformedMessageError,
    OpenMenuMessage,
    SelectItemMessage,
    VersionNotSupportedError,
    decode_event,
)
from pie_ipc.ipc.transport import Transport, WebSocketTransport, server_url
from pie_ipc.logging import get_logger

if TYPE_CHECKING:
    from pie_ipc.config import IPCConfig

logger = get_logger(__name__)


class IPCConnectionState(Enum):
    """IPC client connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class IPCClient(EventEmitter):
    """
    Shared implementation of the reference IPC clients.

    Events emitted (listener arguments in parentheses):
    - ``open`` ()
    - ``select`` (target: InteractionTarget, path: list[int])
    - ``hover`` (target: InteractionTarget, path: list[int])
    - ``cancel`` ()
    - ``error`` (reason: IPCErrorReason)
    - ``disconnect`` () when the server closed the connection

    Attributes:
        server_port: Port read from the discovery record.
        server_api_version: API version read from the discovery record.
        state: Current connection state.
    """

    API_VERSION = API_VERSION

    def __init__(
        self,
        server_port: int,
        server_api_version: int,
        host: str = DEFAULT_HOST,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
    ) -> None:
        """
        Initialize the client. Call ``init()`` to connect.

        Args:
            server_port: Port the IPC server listens on.
            server_api_version: API version supported by the server.
            host: Loopback address of the server.
            open_timeout: Seconds to wait for the connection to open.
        """
        super().__init__()
        self.server_port = server_port
        self.server_api_version = server_api_version
        self.host = host
        self.open_timeout = open_timeout
        self.state = IPCConnectionState.DISCONNECTED

        self._transport: Transport | None = None

    @classmethod
    def from_discovery(
        cls,
        info_path: str | Path,
        host: str = DEFAULT_HOST,
        open_timeout: float = DEFAULT_OPEN_TIMEOUT,
    ) -> Self:
        """
        Create a client for the server advertised in a discovery file.

        Args:
            info_path: Path of the discovery file.
            host: Loopback address of the server.
            open_timeout: Seconds to wait for the connection to open.

        Returns:
            An unconnected client.

        Raises:
            ConnectionFailedError: If the file is missing or unparsable,
                meaning the server is not running.
        """
        record = read_discovery_record(info_path)
        if record is None:
            raise ConnectionFailedError(
                "IPC server is not running",
                details={"info_path": str(info_path)},
            )
        return cls(record.port, record.api_version, host=host, open_timeout=open_timeout)

    @classmethod
    def from_config(cls, config: IPCConfig) -> Self:
        """
        Create a client from configuration, via the discovery file.

        Args:
            config: IPC configuration from AppConfig.
        """
        return cls.from_discovery(
            config.info_path,
            host=config.host,
            open_timeout=config.open_timeout_seconds,
        )

    @property
    def connected(self) -> bool:
        """Whether the client currently holds a transport."""
        return self._transport is not None

    def _create_transport(self) -> Transport:
        """Create the transport used by ``init()``."""
        return WebSocketTransport(
            server_url(self.server_port, self.host),
            open_timeout=self.open_timeout,
        )

    async def init(self) -> None:
        """
        Connect to the IPC server.

        Raises:
            VersionNotSupportedError: If the server's API version differs
                from the client's. No connection is attempted.
            ConnectionFailedError: If the connection cannot be established.
        """
        if self.server_api_version != self.API_VERSION:
            self.state = IPCConnectionState.FAILED
            raise VersionNotSupportedError(
                f"Server API version {self.server_api_version} is not supported",
                details={
                    "server_api_version": self.server_api_version,
                    "client_api_version": self.API_VERSION,
                },
            )

        if self._transport is not None:
            return

        transport = self._create_transport()
        transport.on_message = self._handle_frame
        transport.on_error = self._handle_transport_error
        transport.on_close = lambda: self._handle_transport_closed(transport)

        self.state = IPCConnectionState.CONNECTING
        try:
            await transport.open()
        except ConnectionFailedError:
            self.state = IPCConnectionState.FAILED
            logger.info(
                "IPC connection failed",
                extra={"host": self.host, "port": self.server_port},
            )
            raise

        self._transport = transport
        self.state = IPCConnectionState.CONNECTED
        logger.info(
            "IPC connected to menu server",
            extra={"host": self.host, "port": self.server_port},
        )

    async def close(self) -> None:
        """
        Close the connection. Safe to call repeatedly.

        A registered observer does not need to stop observing first; the
        server cleans up when the connection goes away.
        """
        transport = self._transport
        self._transport = None
        self.state = IPCConnectionState.DISCONNECTED
        if transport is not None:
            await transport.close()
            logger.info("IPC disconnected from menu server")

    async def _send(self, message: IPCMessage | dict[str, Any]) -> bool:
        """
        Send a message, or emit ``not-connected`` if there is no transport.

        Args:
            message: A message model, or an already built wire dictionary.

        Returns:
            True if the message was handed to the transport.
        """
        transport = self._transport
        if transport is None:
            self._emit_error(IPCErrorReason.NOT_CONNECTED)
            return False

        payload = message.to_dict() if isinstance(message, IPCMessage) else message
        try:
            await transport.send(json.dumps(payload))
        except ConnectionClosed:
            self._transport = None
            self.state = IPCConnectionState.DISCONNECTED
            self._emit_error(IPCErrorReason.NOT_CONNECTED)
            return False

        logger.debug("IPC message sent", extra={"type": payload.get("type")})
        return True

    def _handle_frame(self, data: str | bytes) -> None:
        """Decode an inbound frame and dispatch it as an event."""
        try:
            event = decode_event(data)
        except MalformedMessageError as e:
            logger.warning(
                "Malformed message from server",
                extra={"error": e.message},
            )
            self._emit_error(IPCErrorReason.MALFORMED_REQUEST)
            return

        try:
            self._dispatch(event)
        except Exception:
            logger.exception(
                "IPC event listener failed",
                extra={"type": event.type},
            )

    def _dispatch(self, event: EventMessage) -> None:
        """Emit the client-side event corresponding to a message."""
        if isinstance(event, OpenMenuMessage):
            self.emit("open")
        elif isinstance(event, CancelMenuMessage):
            self.emit("cancel")
        elif isinstance(event, SelectItemMessage):
            self.emit("select", event.target, list(event.path))
        elif isinstance(event, HoverItemMessage):
            self.emit("hover", event.target, list(event.path))
        elif isinstance(event, ErrorMessage):
            logger.warning(
                "IPC error from server",
                extra={"reason": event.reason.value, "description": event.description},
            )
            self.emit("error", event.reason)

    def _handle_transport_error(self, error: Exception) -> None:
        """Report a connection lost after it was established."""
        self._emit_error(IPCErrorReason.CONNECTION_FAILED)

    def _handle_transport_closed(self, transport: Transport) -> None:
        """Drop the transport once the connection is gone."""
        if self._transport is transport:
            self._transport = None
            self.state = IPCConnectionState.DISCONNECTED
            logger.info("IPC connection closed by server")
            try:
                self.emit("disconnect")
            except Exception:
                logger.exception("IPC disconnect listener failed")

    def _emit_error(self, reason: IPCErrorReason) -> None:
        try:
            self.emit("error", reason)
        except Exception:
            logger.exception("IPC error listener failed", extra={"reason": reason.value})

    async def __aenter__(self) -> Self:
        """Context manager entry."""
        await self.init()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: Any) -> None:
        """Context manager exit."""
        await self.close()


async def wait_for_event(
    client: EventEmitter,
    event: str,
    timeout: float | None = None,
) -> tuple[Any, ...]:
    """
    Wait until a client emits an event and return its arguments.

    Args:
        client: Client (or any emitter) to listen on.
        event: Event name.
        timeout: Optional timeout in seconds.

    Raises:
        TimeoutError: If the event does not arrive in time.
    """
    loop = asyncio.get_running_loop()
    future: asyncio.Future[tuple[Any, ...]] = loop.create_future()

    def _listener(*args: Any) -> None:
        if not future.done():
            future.set_result(args)

    client.on(event, _listener)
    try:
        return await asyncio.wait_for(future, timeout)
    finally:
        client.off(event, _listener)
