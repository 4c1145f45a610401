"""Command-line interface for talking to a running pie menu IPC server."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Sequence
from typing import Any

import yaml

from pie_ipc.config import AppConfig, build_arg_parser, config_overrides_from_args, load_config
from pie_ipc.ipc.client import IPCClient
from pie_ipc.ipc.discovery import read_discovery_record
from pie_ipc.ipc.observer_client import ObserverClient
from pie_ipc.ipc.protocol import InteractionTarget, IPCError, IPCErrorReason
from pie_ipc.ipc.show_menu_client import ShowMenuClient
from pie_ipc.logging import setup_logging


def print_event(event: str, **fields: Any) -> None:
    """Print one client event as a JSON line on stdout."""
    print(json.dumps({"event": event, **fields}), flush=True)


def attach_printers(client: IPCClient) -> None:
    """Print every interaction and error event the client emits."""

    def on_path_event(event: str):
        def listener(target: InteractionTarget, path: Sequence[int]) -> None:
            print_event(event, target=target.value, path=list(path))

        return listener

    client.on("open", lambda: print_event("open"))
    client.on("cancel", lambda: print_event("cancel"))
    client.on("select", on_path_event("select"))
    client.on("hover", on_path_event("hover"))
    client.on("error", lambda reason: print_event("error", reason=reason.value))


def read_menu(source: str) -> dict[str, Any]:
    """
    Read a menu tree from a JSON file, or from stdin when ``source`` is ``-``.

    Raises:
        SystemExit: If the file cannot be read or is not a JSON object.
    """
    try:
        if source == "-":
            content = sys.stdin.read()
        else:
            with open(source, encoding="utf-8") as f:
                content = f.read()
        menu = json.loads(content)
    except OSError as e:
        print(f"Error: Cannot read menu file: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: Menu is not valid JSON: {e}", file=sys.stderr)
        sys.exit(1)

    if not isinstance(menu, dict):
        print("Error: Menu must be a JSON object", file=sys.stderr)
        sys.exit(1)
    return menu


def command_info(config: AppConfig) -> int:
    """Print the discovery record of the running server."""
    record = read_discovery_record(config.ipc.info_path)
    if record is None:
        print(
            f"Error: IPC server is not running (no record at {config.ipc.info_path})",
            file=sys.stderr,
        )
        return 1

    print(record.to_json())
    return 0


async def command_show_menu(config: AppConfig, menu: dict[str, Any]) -> int:
    """Show a menu and print its events until it is closed."""
    client = ShowMenuClient.from_config(config.ipc)
    attach_printers(client)

    done = asyncio.Event()
    exit_code = 0

    def on_error(reason: IPCErrorReason) -> None:
        nonlocal exit_code
        exit_code = 1
        done.set()

    client.on("select", lambda target, path: done.set())
    client.on("cancel", done.set)
    client.on("error", on_error)
    client.on("disconnect", lambda: on_error(IPCErrorReason.NOT_CONNECTED))

    async with client:
        if not await client.show_menu(menu):
            return 1
        await done.wait()

    return exit_code


async def command_observe(config: AppConfig) -> int:
    """Observe all menus and print their events until interrupted."""
    client = ObserverClient.from_config(config.ipc)
    attach_printers(client)

    stop = asyncio.Event()
    exit_code = 0

    def on_connection_lost() -> None:
        nonlocal exit_code
        exit_code = 1
        stop.set()

    client.on("disconnect", on_connection_lost)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        with contextlib.suppress(ValueError, NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    try:
        async with client:
            if not await client.start_observing():
                return 1
            await stop.wait()
            if client.connected:
                await client.stop_observing()
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            with contextlib.suppress(ValueError, NotImplementedError):
                loop.remove_signal_handler(sig)

    return exit_code


def build_parser() -> argparse.ArgumentParser:
    """Create the ``pie-ipc`` argument parser."""
    parser = build_arg_parser(
        prog="pie-ipc",
        description="Show menus on and observe a running pie menu application",
    )
    parser.add_argument(
        "--timeout",
        "-t",
        type=float,
        help="Seconds to wait for the connection to open",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("info", help="Print the discovery record of the running server")
    show_parser = subparsers.add_parser("show-menu", help="Show a menu and print its events")
    show_parser.add_argument(
        "file",
        help="JSON file holding the menu tree, or - to read it from stdin",
    )
    subparsers.add_parser("observe", help="Print the events of all menus until interrupted")

    return parser


def main(argv: list[str] | None = None) -> None:
    """Main entry point for pie-ipc."""
    parser = build_parser()
    args = parser.parse_args(argv)

    overrides = config_overrides_from_args(args)
    if args.timeout is not None:
        overrides.setdefault("ipc", {})["open_timeout_seconds"] = args.timeout

    try:
        config = load_config(cli_overrides=overrides)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.logging)

    if args.command == "info":
        sys.exit(command_info(config))

    menu = read_menu(args.file) if args.command == "show-menu" else None

    try:
        if menu is not None:
            exit_code = asyncio.run(command_show_menu(config, menu))
        else:
            exit_code = asyncio.run(command_observe(config))
    except IPCError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
