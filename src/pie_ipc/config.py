"""
Configuration management for the pie menu IPC packages.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file ($XDG_CONFIG_HOME/pie-menu/ipc.yml or --config path)
3. Environment variables (PIE_IPC_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)
"""

from __future__ import annotations

import argparse
import ipaddress
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

from pie_ipc.ipc.protocol import (
    DEFAULT_INFO_FILENAME,
    DEFAULT_OPEN_TIMEOUT,
    MAX_MESSAGE_SIZE,
    MAX_QUEUED_EVENTS,
)

ENV_PREFIX = "PIE_IPC_"


def default_info_dir() -> str:
    """Return the per-user directory that holds the discovery file."""
    config_home = os.environ.get("XDG_CONFIG_HOME") or os.path.expanduser("~/.config")
    return str(Path(config_home) / "pie-menu")


# =============================================================================
# IPC Configuration
# =============================================================================


class IPCConfig(BaseModel):
    """IPC endpoint configuration.

    Attributes:
        host: Loopback address the server binds to and clients connect to.
        info_dir: Directory containing the discovery file.
        info_filename: Discovery file name.
        open_timeout_seconds: Client connection handshake timeout.
        max_message_bytes: Largest accepted WebSocket frame.
        max_queued_events: Pending outbound frames per connection.
    """

    host: str = Field(
        default="127.0.0.1",
        description="Loopback address for the IPC WebSocket server",
    )
    info_dir: str = Field(
        default_factory=default_info_dir,
        description="Directory where the discovery file is written",
    )
    info_filename: str = Field(
        default=DEFAULT_INFO_FILENAME,
        description="Name of the discovery file",
    )
    open_timeout_seconds: float = Field(
        default=DEFAULT_OPEN_TIMEOUT,
        description="Seconds a client waits for the connection to open",
        gt=0,
    )
    max_message_bytes: int = Field(
        default=MAX_MESSAGE_SIZE,
        description="Maximum size of a single message in bytes",
        ge=1024,
    )
    max_queued_events: int = Field(
        default=MAX_QUEUED_EVENTS,
        description="Outbound frames queued per connection before it is closed",
        ge=1,
    )

    @field_validator("host")
    @classmethod
    def validate_host(cls, v: str) -> str:
        """Only loopback addresses are allowed."""
        try:
            address = ipaddress.ip_address(v)
        except ValueError as e:
            raise ValueError(f"Invalid host address: {v}") from e
        if not address.is_loopback:
            raise ValueError(f"IPC host must be a loopback address, got: {v}")
        return v

    @property
    def info_path(self) -> Path:
        """Full path of the discovery file."""
        return Path(self.info_dir).expanduser() / self.info_filename


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout (stderr otherwise).
        json_format: Whether to emit JSON log records.
        debug_mode: Force DEBUG level.
    """

    level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )
    log_to_stdout: bool = Field(
        default=False,
        description="Whether to log to stdout instead of stderr",
    )
    json_format: bool = Field(
        default=True,
        description="Whether to emit JSON formatted log records",
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable extra diagnostic logging",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main configuration model.

    Attributes:
        ipc: IPC endpoint configuration.
        logging: Logging configuration.
    """

    ipc: IPCConfig = Field(
        default_factory=IPCConfig,
        description="IPC configuration",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """Parse an environment variable value to a bool, int, float or string."""
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def _load_env_config(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore separator, for example
    ``PIE_IPC_IPC__INFO_DIR=/tmp/menu``.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def build_arg_parser(
    prog: str | None = None,
    description: str = "Pie menu IPC",
) -> argparse.ArgumentParser:
    """
    Create an argument parser with the shared configuration options.

    Command-line tools add their own arguments or subcommands on top.
    """
    parser = argparse.ArgumentParser(
        prog=prog,
        description=description,
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )
    parser.add_argument(
        "--info-dir",
        type=str,
        help="Directory containing the discovery file",
    )
    return parser


def config_overrides_from_args(parsed: argparse.Namespace) -> dict[str, Any]:
    """Translate parsed command-line arguments into a config dictionary."""
    result: dict[str, Any] = {}

    if getattr(parsed, "config", None):
        result["_config_path"] = parsed.config

    if getattr(parsed, "log_level", None):
        result["logging"] = {"level": parsed.log_level}

    if getattr(parsed, "debug", False):
        result.setdefault("logging", {})
        result["logging"]["debug_mode"] = True
        result["logging"]["level"] = "debug"

    if getattr(parsed, "info_dir", None):
        result["ipc"] = {"info_dir": parsed.info_dir}

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """Parse command-line arguments into a config dictionary."""
    parsed, _unknown = build_arg_parser().parse_known_args(args)
    return config_overrides_from_args(parsed)


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = ENV_PREFIX,
    cli_args: list[str] | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.
        cli_overrides: Already parsed command-line overrides; when given,
            ``cli_args`` is not parsed.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If the specified config file doesn't exist.
        ValidationError: If the configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> config.ipc.info_path.name
        'ipc-info.json'
    """
    config_dict: dict[str, Any] = {}

    if cli_overrides is None:
        cli_config = _parse_cli_args(cli_args)
    else:
        cli_config = dict(cli_overrides)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        else:
            default_path = Path(default_info_dir()) / "ipc.yml"
            if default_path.exists():
                config_path = default_path
    else:
        cli_config.pop("_config_path", None)
        if isinstance(config_path, str):
            config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
