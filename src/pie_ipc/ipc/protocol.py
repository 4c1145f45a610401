"""
IPC Protocol definitions for the pie menu application.

This module defines the wire vocabulary spoken between the menu application
(the IPC server) and external processes (the clients), the shared error
reasons, and the exception taxonomy used on both sides.

Protocol Format:
- Transport: WebSocket on a loopback address, text frames
- Message format: one JSON object per frame, tagged by its "type" field
- Requests (client -> server): show-menu, start-observing, stop-observing
- Events (server -> client): open-menu, cancel-menu, select-item,
  hover-item, error

Decoding is tagged-union decoding: the "type" field selects the schema and
the rest of the object is validated against it. Anything that does not
match exactly one schema is a malformed message.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

# =============================================================================
# Protocol Constants
# =============================================================================

# Protocol version written to the discovery file. Clients refuse other values.
API_VERSION = 1

# Observer ID of the implicit observer created by a show-menu request
ONE_TIME_OBSERVER_ID = 0

DEFAULT_HOST = "127.0.0.1"

DEFAULT_INFO_FILENAME = "ipc-info.json"

# Seconds a client waits for the WebSocket handshake
DEFAULT_OPEN_TIMEOUT = 5.0

# Maximum message size: 1 MB
MAX_MESSAGE_SIZE = 1024 * 1024

# Outbound frames buffered per connection before a slow client is dropped
MAX_QUEUED_EVENTS = 1024


# =============================================================================
# Enumerations
# =============================================================================


class IPCErrorReason(str, Enum):
    """Reasons for declining a request or reporting a failure.

    The string values are part of the wire contract.
    """

    NOT_CONNECTED = "not-connected"
    CONNECTION_FAILED = "connection-failed"
    MALFORMED_REQUEST = "malformed-request"
    VERSION_NOT_SUPPORTED = "version-not-supported"
    ALREADY_OBSERVING = "already-observing"
    NOT_OBSERVING = "not-observing"


class InteractionTarget(str, Enum):
    """Whether a hover or selection refers to a leaf item or a submenu."""

    ITEM = "item"
    SUBMENU = "submenu"


# =============================================================================
# IPC Exceptions
# =============================================================================


class IPCError(Exception):
    """Base exception for IPC errors."""

    reason: IPCErrorReason | None = None

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        reason: IPCErrorReason | None = None,
    ) -> None:
        """Initialize an IPC error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}
        if reason is not None:
            self.reason = reason


class ConnectionFailedError(IPCError):
    """Raised when the transport fails before the connection is established."""

    reason = IPCErrorReason.CONNECTION_FAILED


class VersionNotSupportedError(IPCError):
    """Raised when the server advertises an API version the client does not speak."""

    reason = IPCErrorReason.VERSION_NOT_SUPPORTED


class MalformedMessageError(IPCError):
    """Raised when a message cannot be decoded or matches no known tag."""

    reason = IPCErrorReason.MALFORMED_REQUEST


class AlreadyObservingError(IPCError):
    """Raised on start-observing from a connection that is already registered."""

    reason = IPCErrorReason.ALREADY_OBSERVING


class NotObservingError(IPCError):
    """Raised on stop-observing from a connection that is not registered."""

    reason = IPCErrorReason.NOT_OBSERVING


class BindError(IPCError):
    """Raised when the server socket cannot be bound. Fatal to the server."""

    pass


# =============================================================================
# Menu Tree
# =============================================================================

# Zero-based child indices from the menu root; [] is the root itself
ItemPath = list[Annotated[int, Field(strict=True, ge=0)]]


class MenuItem(BaseModel):
    """
    A node of the menu tree carried by a show-menu request.

    The full schema belongs to the menu renderer; only the structure is
    checked here before the tree is handed to the host application. Keys
    this model does not know are dropped.

    Attributes:
        type: Item type understood by the renderer (e.g. "submenu").
        name: Display name.
        icon: Icon name.
        icon_theme: Icon theme name (``iconTheme`` on the wire).
        data: Opaque, type-specific payload.
        children: Child items, for submenus.
        angle: Optional fixed angle in degrees.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: str
    name: str
    icon: str = ""
    icon_theme: str = Field(default="", alias="iconTheme")
    data: Any = None
    children: list[MenuItem] | None = None
    angle: float | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire dictionary."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


MenuItem.model_rebuild()


# =============================================================================
# IPC Message Models
# =============================================================================


class IPCMessage(BaseModel):
    """Base class of all wire messages."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    # Tag of the message; each subclass narrows it to a literal
    type: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())


class ShowMenuMessage(IPCMessage):
    """Sent by a client to request that a menu be shown."""

    type: Literal["show-menu"] = "show-menu"
    menu: MenuItem


class StartObservingMessage(IPCMessage):
    """Sent by a client to receive interaction events for all menus."""

    type: Literal["start-observing"] = "start-observing"


class StopObservingMessage(IPCMessage):
    """Sent by a client to stop receiving interaction events."""

    type: Literal["stop-observing"] = "stop-observing"


class OpenMenuMessage(IPCMessage):
    """Sent by the server when a menu is opened."""

    type: Literal["open-menu"] = "open-menu"


class CancelMenuMessage(IPCMessage):
    """
    Sent by the server when a menu was closed without a selection.

    This happens if the user cancels the menu or another menu is shown on
    top of it.
    """

    type: Literal["cancel-menu"] = "cancel-menu"


class SelectItemMessage(IPCMessage):
    """Sent by the server when an item or submenu was selected."""

    type: Literal["select-item"] = "select-item"
    target: InteractionTarget
    path: ItemPath


class HoverItemMessage(IPCMessage):
    """Sent by the server when an item or submenu is hovered."""

    type: Literal["hover-item"] = "hover-item"
    target: InteractionTarget
    path: ItemPath


class ErrorMessage(IPCMessage):
    """Reports a declined request or a failure on the connection."""

    type: Literal["error"] = "error"
    reason: IPCErrorReason
    description: str

    @classmethod
    def from_exception(cls, error: IPCError) -> ErrorMessage:
        """
        Create an error message from an IPC exception.

        Args:
            error: An exception with a wire reason.

        Returns:
            An ErrorMessage carrying the exception's reason and message.
        """
        if error.reason is None:
            raise ValueError(f"{type(error).__name__} has no wire reason")
        return cls(reason=error.reason, description=error.message)


RequestMessage = Annotated[
    ShowMenuMessage | StartObservingMessage | StopObservingMessage,
    Field(discriminator="type"),
]

EventMessage = Annotated[
    OpenMenuMessage
    | CancelMenuMessage
    | SelectItemMessage
    | HoverItemMessage
    | ErrorMessage,
    Field(discriminator="type"),
]

_REQUEST_ADAPTER: TypeAdapter[RequestMessage] = TypeAdapter(RequestMessage)
_EVENT_ADAPTER: TypeAdapter[EventMessage] = TypeAdapter(EventMessage)


# =============================================================================
# Decoding
# =============================================================================


def load_json(data: str | bytes) -> Any:
    """
    Decode a raw frame into a JSON value.

    Args:
        data: Text frame, or binary frame holding UTF-8 text.

    Returns:
        The decoded JSON value.

    Raises:
        MalformedMessageError: If the frame is not valid UTF-8 JSON or nests
            deeper than the decoder allows.
    """
    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return json.loads(data)
    except ValueError as e:
        raise MalformedMessageError(
            f"Invalid JSON: {e}",
            details={"raw": str(data[:100])},
        ) from e
    except RecursionError as e:
        raise MalformedMessageError(
            "Invalid JSON: nested too deeply",
            details={"raw": str(data[:100])},
        ) from e


def _validate(adapter: TypeAdapter[Any], payload: Any) -> Any:
    try:
        return adapter.validate_python(payload)
    except ValidationError as e:
        raise MalformedMessageError(
            "Unknown or malformed message",
            details={
                "errors": e.errors(
                    include_url=False, include_context=False, include_input=False
                )
            },
        ) from e
    except RecursionError as e:
        raise MalformedMessageError("Message is nested too deeply") from e


def parse_request(payload: Any) -> RequestMessage:
    """
    Match an already decoded JSON value against the request tags.

    Raises:
        MalformedMessageError: If the value matches no request schema.
    """
    return _validate(_REQUEST_ADAPTER, payload)


def parse_event(payload: Any) -> EventMessage:
    """
    Match an already decoded JSON value against the event tags.

    Raises:
        MalformedMessageError: If the value matches no event schema.
    """
    return _validate(_EVENT_ADAPTER, payload)


def decode_request(data: str | bytes) -> RequestMessage:
    """Decode a raw frame received by the server."""
    return parse_request(load_json(data))


def decode_event(data: str | bytes) -> EventMessage:
    """Decode a raw frame received by a client."""
    return parse_event(load_json(data))
