"""Connection events submitted by transports to the relay mailbox."""

from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeAlias

from src.common.types import ConnectionID

if TYPE_CHECKING:
    from src.relay.transport.base import RelayConnection


@dataclass(frozen=True)
class ConnectionOpened:
    """A transport accepted a new connection."""

    handle: "RelayConnection"


@dataclass(frozen=True)
class FrameReceived:
    """A text frame arrived on a connection."""

    connection_id: ConnectionID
    raw: str | bytes


@dataclass(frozen=True)
class ConnectionClosed:
    """A connection went away (client close, network loss or server stop)."""

    connection_id: ConnectionID


RelayEvent: TypeAlias = ConnectionOpened | FrameReceived | ConnectionClosed
