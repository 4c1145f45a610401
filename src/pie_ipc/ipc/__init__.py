"""
IPC module for communication with the pie menu application.

This module provides the wire protocol, the discovery record and the
reference clients for the menu application's local WebSocket IPC server.
"""

from pie_ipc.ipc.client import IPCClient, IPCConnectionState, wait_for_event
from pie_ipc.ipc.discovery import (
    DiscoveryRecord,
    read_discovery_record,
    write_discovery_record,
)
from pie_ipc.ipc.events import EventEmitter
from pie_ipc.ipc.observer_client import ObserverClient
from pie_ipc.ipc.protocol import (
    API_VERSION,
    AlreadyObservingError,
    BindError,
    ConnectionFailedError,
    InteractionTarget,
    IPCError,
    IPCErrorReason,
    MalformedMessageError,
    MenuItem,
    NotObservingError,
    VersionNotSupportedError,
)
from pie_ipc.ipc.show_menu_client import ShowMenuClient

__all__ = [
    "API_VERSION",
    "AlreadyObservingError",
    "BindError",
    "ConnectionFailedError",
    "DiscoveryRecord",
    "EventEmitter",
    "IPCClient",
    "IPCConnectionState",
    "IPCError",
    "IPCErrorReason",
    "InteractionTarget",
    "MalformedMessageError",
    "MenuItem",
    "NotObservingError",
    "ObserverClient",
    "ShowMenuClient",
    "VersionNotSupportedError",
    "read_discovery_record",
    "wait_for_event",
    "write_discovery_record",
]
