"""
Show-menu client for the pie menu IPC server.

Requests that the menu application displays a custom menu and reports the
user's interaction with that one menu. The server registers the connection
as a one-time observer for each request; the registration ends with the
``select`` or ``cancel`` event, so every request receives exactly one
interaction sequence.

Example:
    >>> client = ShowMenuClient(port, api_version)  # from ipc-info.json
    >>> await client.init()
    >>> client.on("select", lambda target, path: print("selected", path))
    >>> client.on("cancel", lambda: print("cancelled"))
    >>> await client.show_menu(MenuItem(type="submenu", name="Apps", children=[...]))
"""

from __future__ import annotations

from typing import Any

from pie_ipc.ipc.client import IPCClient
from pie_ipc.ipc.protocol import MenuItem, ShowMenuMessage


class ShowMenuClient(IPCClient):
    """
    Reference client that shows menus.

    Emits ``open``, ``select``, ``hover``, ``cancel`` and ``error`` events
    (see :class:`~pie_ipc.ipc.client.IPCClient`).
    """

    async def show_menu(self, menu: MenuItem | dict[str, Any]) -> bool:
        """
        Ask the server to show a menu.

        If the client is not connected, an ``error`` event with
        ``not-connected`` is emitted and nothing is sent; the request is not
        queued. A menu the server cannot parse is answered with a
        ``malformed-request`` error event.

        Args:
            menu: Menu tree, as a model or as its wire dictionary.

        Returns:
            True if the request was sent.
        """
        if isinstance(menu, MenuItem):
            payload = ShowMenuMessage(menu=menu).to_dict()
        else:
            # Sent as-is; the server validates the tree
            payload = {"type": "show-menu", "menu": menu}
        return await self._send(payload)
