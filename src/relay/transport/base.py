"""Base transport abstraction for relay connections.

Defines the interface every transport implementation must provide so that the
signaling relay never touches substrate-specific connection objects.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from src.relay.relay import SignalingRelay


class RelayConnection(ABC):
    """Handle for one live client connection.

    The relay only ever enqueues outbound frames; the transport owns the
    actual write path and the connection lifetime.
    """

    @property
    @abstractmethod
    def connection_id(self) -> str:
        """Unique connection identifier, used as the participant identity."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the connection is still active."""
        pass

    @abstractmethod
    def enqueue(self, frame: str) -> bool:
        """Queue one outbound text frame without blocking.

        Args:
            frame: Serialized JSON message

        Returns:
            True if the frame was queued, False if it was dropped
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        pass


class Transport(ABC):
    """Base transport implementation.

    Manages the lifecycle of a listening server and feeds the connections it
    accepts into a ``SignalingRelay``.
    """

    @abstractmethod
    async def start(self, relay: "SignalingRelay") -> None:
        """Start accepting connections.

        Returns once the server is bound.

        Raises:
            RuntimeError: If the transport is already running or fails to start
            OSError: If port binding fails (for network transports)
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the server and close every active connection. Idempotent."""
        pass

    @property
    @abstractmethod
    def connection_count(self) -> int:
        """Number of currently open connections."""
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass
