"""
IPC server of the pie menu application.

The server listens for WebSocket connections on a loopback address and an
OS-assigned port, which it publishes together with the protocol version in
the discovery file. External processes use it to show menus and to observe
menu interactions.

The host application subscribes to three events:

- ``show-menu`` (menu: MenuItem, callbacks: ObserverCallbacks) - a client
  asked for a menu to be shown; the callbacks report the interaction with
  that one menu back to the requesting connection
- ``start-observing`` (observer_id: int, callbacks: ObserverCallbacks) - a
  connection became a persistent observer; the host calls the callbacks as
  the user interacts with any of its menus
- ``stop-observing`` (observer_id: int) - the persistent observer is gone;
  its callbacks no longer deliver anything

A show-menu request registers its connection as the one-time observer 0.
Every request gets its own callbacks, so concurrent show-menu clients stay
apart even though they share that ID. The registration ends after
``on_select`` or ``on_cancel``, a superseding show-menu, a stop-observing
request or a disconnect; no host event reports that, the callbacks simply
stop delivering.

Example:
    >>> server = IPCServer(info_dir="~/.config/pie-menu")
    >>> server.on("show-menu", renderer.show)
    >>> server.on("start-observing", renderer.add_observer)
    >>> server.on("stop-observing", renderer.remove_observer)
    >>> await server.start()
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosedError

from pie_ipc.config import build_arg_parser, config_overrides_from_args, load_config
from pie_ipc.ipc.discovery import (
    DiscoveryRecord,
    info_path_for,
    remove_discovery_record,
    write_discovery_record,
)
from pie_ipc.ipc.events import EventEmitter
from pie_ipc.ipc.protocol import (
    API_VERSION,
    DEFAULT_HOST,
    DEFAULT_INFO_FILENAME,
    MAX_MESSAGE_SIZE,
    MAX_QUEUED_EVENTS,
    ONE_TIME_OBSERVER_ID,
    AlreadyObservingError,
    BindError,
    CancelMenuMessage,
    ErrorMessage,
    HoverItemMessage,
    InteractionTarget,
    IPCMessage,
    MalformedMessageError,
    MenuItem,
    NotObservingError,
    OpenMenuMessage,
    SelectItemMessage,
    ShowMenuMessage,
    StartObservingMessage,
    StopObservingMessage,
    decode_request,
)
from pie_ipc.ipc.transport import server_url
from pie_ipc.logging import get_logger, setup_logging
from pie_ipc_host.session import ObserverRole, Session, SessionRegistry

if TYPE_CHECKING:
    from pie_ipc.config import AppConfig, IPCConfig

logger = get_logger(__name__)


@dataclass(frozen=True)
class ObserverCallbacks:
    """
    Callbacks handed to the host application for one observer registration.

    They must be called on the server's event loop; hosts running on other
    threads go through ``loop.call_soon_threadsafe``. Once the registration
    has ended, calling them does nothing.

    Attributes:
        on_open: A menu was opened.
        on_select: An item or submenu was selected; takes (target, path).
        on_hover: An item or submenu is hovered; takes (target, path).
        on_cancel: The menu was closed without a selection.
    """

    on_open: Callable[[], None]
    on_select: Callable[[InteractionTarget | str, Sequence[int]], None]
    on_hover: Callable[[InteractionTarget | str, Sequence[int]], None]
    on_cancel: Callable[[], None]


class IPCServer(EventEmitter):
    """
    WebSocket IPC server.

    Attributes:
        host: Loopback address to bind.
        info_path: Path of the discovery file.
        registry: Sessions of the open connections.
    """

    API_VERSION = API_VERSION

    def __init__(
        self,
        info_dir: str | Path,
        host: str = DEFAULT_HOST,
        info_filename: str = DEFAULT_INFO_FILENAME,
        max_message_bytes: int = MAX_MESSAGE_SIZE,
        max_queued_events: int = MAX_QUEUED_EVENTS,
    ) -> None:
        """
        Initialize the server. Call ``start()`` to begin listening.

        Args:
            info_dir: Directory where the discovery file is written.
            host: Loopback address to bind.
            info_filename: Name of the discovery file.
            max_message_bytes: Largest accepted inbound frame.
            max_queued_events: Outbound frames a connection may have pending
                before it is closed.
        """
        super().__init__()
        self.host = host
        self.info_path = info_path_for(info_dir, info_filename)
        self.max_message_bytes = max_message_bytes
        self.registry = SessionRegistry(max_queued_events)

        self._server: Server | None = None
        self._port: int | None = None
        self._stopped = asyncio.Event()

    @classmethod
    def from_config(cls, config: IPCConfig) -> IPCServer:
        """
        Create a server from configuration.

        Args:
            config: IPC configuration from AppConfig.
        """
        return cls(
            info_dir=config.info_dir,
            host=config.host,
            info_filename=config.info_filename,
            max_message_bytes=config.max_message_bytes,
            max_queued_events=config.max_queued_events,
        )

    @property
    def running(self) -> bool:
        """Whether the server is listening."""
        return self._server is not None

    @property
    def port(self) -> int | None:
        """Port assigned by the OS, once started."""
        return self._port

    @property
    def api_version(self) -> int:
        """Protocol version spoken by this server."""
        return self.API_VERSION

    async def start(self) -> None:
        """
        Bind the socket, write the discovery file and accept connections.

        Raises:
            BindError: If the socket cannot be bound.
        """
        if self._server is not None:
            return

        try:
            self._server = await serve(
                self._handle_connection,
                self.host,
                0,
                max_size=self.max_message_bytes,
            )
        except OSError as e:
            raise BindError(
                f"Cannot bind IPC server on {self.host}: {e}",
                details={"host": self.host},
            ) from e

        self._port = next(iter(self._server.sockets)).getsockname()[1]
        self._stopped.clear()

        record = DiscoveryRecord(port=self._port, api_version=self.API_VERSION)
        try:
            write_discovery_record(self.info_path, record)
        except OSError as e:
            logger.error(
                "Failed to write discovery file",
                extra={"path": str(self.info_path), "error": str(e)},
            )

        logger.info(
            "IPC server listening",
            extra={
                "url": server_url(self._port, self.host),
                "info_path": str(self.info_path),
                "api_version": self.API_VERSION,
            },
        )

    async def serve_forever(self) -> None:
        """Start the server if needed and wait until ``stop()`` is called."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Stop accepting connections and close the open ones. Idempotent."""
        if self._server is None:
            return

        server = self._server
        self._server = None

        server.close()
        await server.wait_closed()

        for session in self.registry.sessions:
            await session.close()

        if self._port is not None:
            with contextlib.suppress(OSError):
                remove_discovery_record(self.info_path, self._port)

        self._stopped.set()

        logger.info("IPC server stopped", extra={"port": self._port})

    def get_stats(self) -> dict[str, Any]:
        """
        Get server statistics.

        Returns:
            Dict with server statistics.
        """
        return {
            "running": self.running,
            "port": self._port,
            "api_version": self.API_VERSION,
            "info_path": str(self.info_path),
            **self.registry.get_stats(),
        }

    async def _handle_connection(self, connection: ServerConnection) -> None:
        """
        Serve one client connection until it closes.

        Messages are handled one at a time in arrival order.
        """
        session = self.registry.open_session(connection)
        logger.info(
            "Client connected",
            extra={"session": session.session_id, "peer": session.peer},
        )

        try:
            async for data in connection:
                self._handle_message(session, data)

        except ConnectionClosedError as e:
            logger.info(
                "Client connection lost",
                extra={"session": session.session_id, "error": str(e)},
            )

        except Exception as e:
            logger.exception(
                "Connection error",
                extra={"session": session.session_id, "error": str(e)},
            )

        finally:
            observer_id = self.registry.close_session(session)
            if observer_id is not None:
                self._release_observer(observer_id)
            await session.close()
            logger.info("Client disconnected", extra={"session": session.session_id})

    def _handle_message(self, session: Session, data: str | bytes) -> None:
        """Validate and route one inbound message."""
        try:
            request = decode_request(data)
        except MalformedMessageError as e:
            logger.warning(
                "Malformed request",
                extra={"session": session.session_id, "error": e.message},
            )
            session.send(ErrorMessage.from_exception(e))
            return

        logger.debug(
            "IPC request received",
            extra={"session": session.session_id, "type": request.type},
        )

        if isinstance(request, ShowMenuMessage):
            self._handle_show_menu(session, request.menu)
        elif isinstance(request, StartObservingMessage):
            self._handle_start_observing(session)
        elif isinstance(request, StopObservingMessage):
            self._handle_stop_observing(session)

    def _handle_show_menu(self, session: Session, menu: MenuItem) -> None:
        previous = self.registry.begin_one_time(session)
        if previous is not None:
            # The new request supersedes the previous registration
            self._release_observer(previous)

        self._notify_host("show-menu", menu, self._make_callbacks(session))

    def _handle_start_observing(self, session: Session) -> None:
        try:
            observer_id = self.registry.start_observing(session)
        except AlreadyObservingError as e:
            session.send(ErrorMessage.from_exception(e))
            return

        logger.info(
            "Observer registered",
            extra={"session": session.session_id, "observer_id": observer_id},
        )
        self._notify_host("start-observing", observer_id, self._make_callbacks(session))

    def _handle_stop_observing(self, session: Session) -> None:
        try:
            observer_id = self.registry.stop_observing(session)
        except NotObservingError as e:
            session.send(ErrorMessage.from_exception(e))
            return

        logger.info(
            "Observer unregistered",
            extra={"session": session.session_id, "observer_id": observer_id},
        )
        self._release_observer(observer_id)

    def _make_callbacks(self, session: Session) -> ObserverCallbacks:
        """Create the callbacks for the session's current registration."""
        scope = session.scope

        def deliver(message: IPCMessage, ends_interaction: bool) -> None:
            if not session.in_scope(scope):
                logger.debug(
                    "Event for inactive observer dropped",
                    extra={"session": session.session_id, "type": message.type},
                )
                return

            session.send(message)

            if ends_interaction and session.role is ObserverRole.ONE_TIME:
                self.registry.stop_observing(session)

        def on_open() -> None:
            deliver(OpenMenuMessage(), ends_interaction=False)

        def on_select(target: InteractionTarget | str, path: Sequence[int]) -> None:
            deliver(SelectItemMessage(target=target, path=list(path)), ends_interaction=True)

        def on_hover(target: InteractionTarget | str, path: Sequence[int]) -> None:
            deliver(HoverItemMessage(target=target, path=list(path)), ends_interaction=False)

        def on_cancel() -> None:
            deliver(CancelMenuMessage(), ends_interaction=True)

        return ObserverCallbacks(
            on_open=on_open,
            on_select=on_select,
            on_hover=on_hover,
            on_cancel=on_cancel,
        )

    def _release_observer(self, observer_id: int) -> None:
        """Tell the host a persistent observer is gone."""
        if observer_id != ONE_TIME_OBSERVER_ID:
            self._notify_host("stop-observing", observer_id)

    def _notify_host(self, event: str, *args: Any) -> None:
        """Emit a host event; a failing handler is logged, not propagated."""
        try:
            self.emit(event, *args)
        except Exception:
            logger.exception("Host handler failed", extra={"event": event})


# =============================================================================
# Standalone runner
# =============================================================================


def attach_logging_host(server: IPCServer) -> None:
    """
    Subscribe handlers that only log the host events.

    Used by the standalone runner, which has no menu renderer.
    """

    def on_show_menu(menu: MenuItem, _callbacks: ObserverCallbacks) -> None:
        logger.info(
            "Show-menu request",
            extra={"menu": menu.name, "children": len(menu.children or [])},
        )

    def on_start_observing(observer_id: int, _callbacks: ObserverCallbacks) -> None:
        logger.info("Start observing", extra={"observer_id": observer_id})

    def on_stop_observing(observer_id: int) -> None:
        logger.info("Stop observing", extra={"observer_id": observer_id})

    server.on("show-menu", on_show_menu)
    server.on("start-observing", on_start_observing)
    server.on("stop-observing", on_stop_observing)


async def run_server(config: AppConfig | None = None) -> None:
    """
    Run a standalone IPC server until SIGINT or SIGTERM.

    Args:
        config: Application configuration (defaults if not provided).
    """
    if config is None:
        config = load_config(cli_args=[])

    server = IPCServer.from_config(config.ipc)
    attach_logging_host(server)

    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        logger.info("Received shutdown signal")
        asyncio.create_task(server.stop())

    try:
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, signal_handler)
    except (ValueError, NotImplementedError):
        # Signal handling not supported on this platform
        pass

    await server.serve_forever()


def main(argv: list[str] | None = None) -> None:
    """Entry point of ``pie-ipc-host``."""
    parser = build_arg_parser(
        prog="pie-ipc-host",
        description="Run a standalone pie menu IPC server that logs all requests",
    )
    args = parser.parse_args(argv)

    config = load_config(cli_overrides=config_overrides_from_args(args))
    setup_logging(config.logging)

    try:
        asyncio.run(run_server(config))
    except BindError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
