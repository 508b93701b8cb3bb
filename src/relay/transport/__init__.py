"""Transport layer for relay connections."""

from src.relay.transport.base import RelayConnection, Transport
from src.relay.transport.websocket_transport import WebSocketConnection, WebSocketTransport

__all__ = ["RelayConnection", "Transport", "WebSocketConnection", "WebSocketTransport"]
