"""
Pie Menu IPC host - server side of the local menu IPC protocol.

The menu application embeds :class:`IPCServer`, subscribes to its
``show-menu``, ``start-observing`` and ``stop-observing`` events, and drives
the :class:`ObserverCallbacks` it receives as the user interacts with menus.
"""

from pie_ipc_host.server import IPCServer, ObserverCallbacks, run_server
from pie_ipc_host.session import ObserverRole, Session, SessionRegistry

__all__ = [
    "IPCServer",
    "ObserverCallbacks",
    "ObserverRole",
    "Session",
    "SessionRegistry",
    "run_server",
]
