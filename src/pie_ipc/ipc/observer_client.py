"""
Observer client for the pie menu IPC server.

Listens to the user's interaction with every menu the application shows,
for example to drive haptic feedback. Unlike the show-menu client, the
registration is explicit and lasts across any number of menus until
``stop_observing()`` is called or the connection is closed.

Example:
    >>> client = ObserverClient(port, api_version)  # from ipc-info.json
    >>> await client.init()
    >>> client.on("open", lambda: print("menu opened"))
    >>> client.on("hover", lambda target, path: print("hover", target.value, path))
    >>> await client.start_observing()
    >>> ...
    >>> await client.stop_observing()
"""

from __future__ import annotations

from pie_ipc.ipc.client import IPCClient
from pie_ipc.ipc.protocol import StartObservingMessage, StopObservingMessage


class ObserverClient(IPCClient):
    """
    Reference client that observes menu interactions.

    Emits ``open``, ``select``, ``hover``, ``cancel`` and ``error`` events
    (see :class:`~pie_ipc.ipc.client.IPCClient`). Starting twice is answered
    with ``already-observing``, stopping while not observing with
    ``not-observing``.
    """

    async def start_observing(self) -> bool:
        """
        Register as an observer of all menu interactions.

        Returns:
            True if the request was sent; False if not connected, in which
            case an ``error`` event with ``not-connected`` was emitted.
        """
        return await self._send(StartObservingMessage())

    async def stop_observing(self) -> bool:
        """
        Stop observing menu interactions.

        Returns:
            True if the request was sent; False if not connected, in which
            case an ``error`` event with ``not-connected`` was emitted.
        """
        return await self._send(StopObservingMessage())
