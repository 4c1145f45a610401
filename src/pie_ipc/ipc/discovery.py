"""
Discovery record shared between the IPC server and its clients.

The server writes its OS-assigned port and the protocol version to a small
JSON file once its socket is bound. Clients read the file to learn where to
connect; a missing or unparsable file means the server is not running.
"""

from __future__ import annotations

import contextlib
import json
import os
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from pie_ipc.ipc.protocol import API_VERSION, DEFAULT_INFO_FILENAME
from pie_ipc.logging import get_logger

logger = get_logger(__name__)


class DiscoveryRecord(BaseModel):
    """
    Contents of the discovery file.

    Attributes:
        port: Port the IPC server listens on.
        api_version: Protocol version spoken by the server (``apiVersion``
            on disk).
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    port: int = Field(ge=1, le=65535)
    api_version: int = Field(default=API_VERSION, alias="apiVersion")

    def to_json(self) -> str:
        """Serialize to the on-disk JSON format."""
        return json.dumps(self.model_dump(by_alias=True), indent=2)


def info_path_for(info_dir: str | Path, filename: str = DEFAULT_INFO_FILENAME) -> Path:
    """Return the discovery file path inside ``info_dir``."""
    return Path(info_dir).expanduser() / filename


def write_discovery_record(path: str | Path, record: DiscoveryRecord) -> None:
    """
    Write the discovery record, replacing any stale file.

    The record is written to a temporary sibling and renamed into place so
    readers never observe a half-written file.

    Args:
        path: Discovery file path.
        record: Record to persist.

    Raises:
        OSError: If the directory or file cannot be written.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    try:
        tmp_path.write_text(record.to_json(), encoding="utf-8")
        tmp_path.replace(path)
    except OSError:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise

    logger.debug(
        "Discovery record written",
        extra={"path": str(path), "port": record.port},
    )


def read_discovery_record(path: str | Path) -> DiscoveryRecord | None:
    """
    Read the discovery record.

    Args:
        path: Discovery file path.

    Returns:
        The record, or None if the file is missing or unparsable (the server
        is treated as not running).
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(
            "Discovery file unreadable",
            extra={"path": str(path), "error": str(e)},
        )
        return None

    try:
        return DiscoveryRecord.model_validate_json(content)
    except ValidationError as e:
        logger.warning(
            "Discovery file unparsable",
            extra={"path": str(path), "error_count": e.error_count()},
        )
        return None


def remove_discovery_record(path: str | Path, port: int) -> bool:
    """
    Remove the discovery file if it still advertises ``port``.

    A file rewritten by another server instance is left alone.

    Returns:
        True if the file was removed.
    """
    path = Path(path)
    record = read_discovery_record(path)
    if record is None or record.port != port:
        return False

    try:
        path.unlink()
    except FileNotFoundError:
        return False
    return True
