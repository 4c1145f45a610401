"""
Pytest configuration for the pie menu IPC tests.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from pie_ipc.ipc.protocol import MenuItem
from pie_ipc_host.server import IPCServer, ObserverCallbacks

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


class HostRecorder:
    """Stand-in for the menu application that records the server's host events."""

    def __init__(self, server: IPCServer) -> None:
        self.events: list[tuple[str, Any]] = []
        self.menus: list[MenuItem] = []
        self.menu_callbacks: list[ObserverCallbacks] = []
        self.callbacks: dict[int, ObserverCallbacks] = {}

        server.on("show-menu", self._on_show_menu)
        server.on("start-observing", self._on_start_observing)
        server.on("stop-observing", self._on_stop_observing)

    def _on_show_menu(self, menu: MenuItem, callbacks: ObserverCallbacks) -> None:
        self.menus.append(menu)
        self.menu_callbacks.append(callbacks)
        self.events.append(("show-menu", menu.name))

    def _on_start_observing(self, observer_id: int, callbacks: ObserverCallbacks) -> None:
        self.callbacks[observer_id] = callbacks
        self.events.append(("start-observing", observer_id))

    def _on_stop_observing(self, observer_id: int) -> None:
        self.events.append(("stop-observing", observer_id))

    def names(self) -> list[str]:
        """Return the recorded event names in order."""
        return [name for name, _ in self.events]


@pytest.fixture
def info_dir(tmp_path: Path) -> Path:
    """Directory for the discovery file."""
    return tmp_path / "pie-menu"


@pytest.fixture
async def server(info_dir: Path) -> AsyncIterator[IPCServer]:
    """A started IPC server on an OS-assigned port."""
    ipc_server = IPCServer(info_dir=info_dir)
    await ipc_server.start()
    try:
        yield ipc_server
    finally:
        await ipc_server.stop()


@pytest.fixture
def host(server: IPCServer) -> HostRecorder:
    """Host event recorder attached to the server."""
    return HostRecorder(server)


@pytest.fixture
def sample_menu() -> MenuItem:
    """A small two-level menu."""
    return MenuItem(
        type="submenu",
        name="Apps",
        icon="applications-all",
        iconTheme="material-symbols-rounded",
        children=[
            MenuItem(type="command", name="Terminal", data="gnome-terminal"),
            MenuItem(
                type="submenu",
                name="Web",
                children=[MenuItem(type="uri", name="Docs", data="https://example.org")],
            ),
        ],
    )
