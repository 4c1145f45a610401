"""
Tests for the pie-ipc command-line interface.
"""

from __future__ import annotations

import asyncio
import io
import json
import logging
from collections.abc import Iterator
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from pie_ipc.cli import build_parser, command_observe, command_show_menu, main, read_menu
from pie_ipc.config import AppConfig, IPCConfig
from pie_ipc.ipc.discovery import DiscoveryRecord, write_discovery_record
from pie_ipc.ipc.protocol import MenuItem
from pie_ipc_host.server import IPCServer

if TYPE_CHECKING:
    from conftest import HostRecorder


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Keep user configuration and logging setup out of the tests."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    yield
    for name in ("pie_ipc", "pie_ipc_host"):
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.propagate = True


def app_config(info_dir: Path) -> AppConfig:
    return AppConfig(ipc=IPCConfig(info_dir=str(info_dir)))


def output_lines(capsys: pytest.CaptureFixture[str]) -> list[dict[str, object]]:
    return [json.loads(line) for line in capsys.readouterr().out.splitlines() if line]


async def eventually_callbacks(host: HostRecorder, observer_id: int) -> None:
    async with asyncio.timeout(2.0):
        while observer_id not in host.callbacks:
            await asyncio.sleep(0.01)


async def eventually_menu(host: HostRecorder) -> None:
    async with asyncio.timeout(2.0):
        while not host.menu_callbacks:
            await asyncio.sleep(0.01)


class TestParser:
    """Tests for argument parsing."""

    def test_show_menu_arguments(self) -> None:
        """Test show-menu takes a file and shared options."""
        args = build_parser().parse_args(
            ["--info-dir", "/tmp/menu", "--timeout", "2", "show-menu", "menu.json"]
        )
        assert args.command == "show-menu"
        assert args.file == "menu.json"
        assert args.timeout == 2.0
        assert args.info_dir == "/tmp/menu"

    def test_command_required(self) -> None:
        """Test a subcommand is required."""
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestReadMenu:
    """Tests for read_menu()."""

    def test_read_file(self, tmp_path: Path) -> None:
        """Test a menu file is loaded."""
        path = tmp_path / "menu.json"
        path.write_text('{"type": "submenu", "name": "Apps"}')
        assert read_menu(str(path)) == {"type": "submenu", "name": "Apps"}

    def test_read_stdin(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test - reads the menu from stdin."""
        monkeypatch.setattr("sys.stdin", io.StringIO('{"type": "command", "name": "Run"}'))
        assert read_menu("-")["name"] == "Run"

    @pytest.mark.parametrize("content", ["not json", "[1, 2]"])
    def test_invalid_menu(
        self, tmp_path: Path, content: str, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test invalid menus exit with status 1."""
        path = tmp_path / "menu.json"
        path.write_text(content)
        with pytest.raises(SystemExit) as exc_info:
            read_menu(str(path))
        assert exc_info.value.code == 1
        assert "Error" in capsys.readouterr().err

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing menu file exits with status 1."""
        with pytest.raises(SystemExit) as exc_info:
            read_menu(str(tmp_path / "missing.json"))
        assert exc_info.value.code == 1


class TestInfoCommand:
    """Tests for the info subcommand."""

    def test_info(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        """Test the discovery record is printed."""
        write_discovery_record(tmp_path / "ipc-info.json", DiscoveryRecord(port=45678))

        with pytest.raises(SystemExit) as exc_info:
            main(["--info-dir", str(tmp_path), "info"])

        assert exc_info.value.code == 0
        assert json.loads(capsys.readouterr().out) == {"port": 45678, "apiVersion": 1}

    def test_info_without_server(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test a missing record exits with status 1."""
        with pytest.raises(SystemExit) as exc_info:
            main(["--info-dir", str(tmp_path), "info"])

        assert exc_info.value.code == 1
        assert "not running" in capsys.readouterr().err

    def test_show_menu_without_server(
        self, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        """Test show-menu fails cleanly when no server is running."""
        path = tmp_path / "menu.json"
        path.write_text('{"type": "submenu", "name": "Apps"}')

        with pytest.raises(SystemExit) as exc_info:
            main(["--info-dir", str(tmp_path), "show-menu", str(path)])

        assert exc_info.value.code == 1
        assert "not running" in capsys.readouterr().err


@pytest.mark.integration
class TestClientCommands:
    """Tests for show-menu and observe against a running server."""

    async def test_show_menu(
        self,
        server: IPCServer,
        host: HostRecorder,
        info_dir: Path,
        sample_menu: MenuItem,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test events are printed and the command ends after select."""
        task = asyncio.create_task(command_show_menu(app_config(info_dir), sample_menu.to_dict()))
        await eventually_menu(host)

        host.menu_callbacks[0].on_open()
        host.menu_callbacks[0].on_select("item", [0])

        assert await asyncio.wait_for(task, 2.0) == 0
        assert output_lines(capsys) == [
            {"event": "open"},
            {"event": "select", "target": "item", "path": [0]},
        ]

    async def test_show_menu_rejected(
        self,
        server: IPCServer,
        host: HostRecorder,
        info_dir: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test a malformed menu ends the command with status 1."""
        exit_code = await asyncio.wait_for(
            command_show_menu(app_config(info_dir), {"name": "missing type"}), 2.0
        )

        assert exit_code == 1
        assert output_lines(capsys) == [{"event": "error", "reason": "malformed-request"}]

    async def test_observe_until_server_stops(
        self,
        server: IPCServer,
        host: HostRecorder,
        info_dir: Path,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test observe prints events until the connection goes away."""
        task = asyncio.create_task(command_observe(app_config(info_dir)))
        await eventually_callbacks(host, 1)

        host.callbacks[1].on_hover("submenu", [2])
        host.callbacks[1].on_cancel()
        await asyncio.sleep(0.1)
        await server.stop()

        assert await asyncio.wait_for(task, 2.0) == 1
        assert output_lines(capsys) == [
            {"event": "hover", "target": "submenu", "path": [2]},
            {"event": "cancel"},
        ]
