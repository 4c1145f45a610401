"""
Publish/subscribe registry used by the IPC clients and the IPC server.

Every client and server instance owns its own emitter; there is no global
bus. Listeners are called synchronously, in registration order, from the
code path that emits the event.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from pie_ipc.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[..., Any]


class EventEmitter:
    """
    Registry mapping event names to ordered lists of listeners.

    Example:
        >>> emitter = EventEmitter()
        >>> emitter.on("select", lambda target, path: print(target, path))
        >>> emitter.emit("select", "item", [0, 1])
    """

    def __init__(self) -> None:
        """Initialize an emitter without listeners."""
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event: str, listener: Listener) -> Listener:
        """
        Register a listener for an event.

        Args:
            event: Event name (e.g. "select", "start-observing").
            listener: Callable receiving the event arguments.

        Returns:
            The listener, so this can be used as a decorator factory
            argument or stored for ``off()``.
        """
        self._listeners.setdefault(event, []).append(listener)
        return listener

    def once(self, event: str, listener: Listener) -> Listener:
        """Register a listener that is removed after its first call."""

        def _wrapper(*args: Any) -> Any:
            self.off(event, _wrapper)
            return listener(*args)

        return self.on(event, _wrapper)

    def off(self, event: str, listener: Listener) -> None:
        """
        Remove one registration of a listener.

        Removing a listener that is not registered is a no-op.
        """
        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(listener)
        except ValueError:
            return
        if not listeners:
            del self._listeners[event]

    def remove_all_listeners(self, event: str | None = None) -> None:
        """Remove the listeners of one event, or of all events."""
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        """Return the number of listeners registered for an event."""
        return len(self._listeners.get(event, ()))

    def emit(self, event: str, *args: Any) -> bool:
        """
        Call every listener of an event in registration order.

        Exceptions raised by a listener propagate to the caller and stop the
        dispatch.

        Args:
            event: Event name.
            *args: Arguments passed to each listener.

        Returns:
            True if the event had listeners.
        """
        # Snapshot so listeners may (un)register during dispatch
        listeners = list(self._listeners.get(event, ()))
        if not listeners:
            logger.debug("Event without listeners", extra={"event": event})
            return False

        for listener in listeners:
            listener(*args)
        return True
