"""WebSocket transport implementation.

Accepts client WebSocket connections and feeds their frames into the signaling
relay's mailbox. Each connection owns a bounded outbound queue drained by its
own sender task, so the relay can deliver without awaiting network I/O.
"""

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any

import websockets
from websockets.asyncio.server import ServerConnection, serve
from websockets.protocol import State

from src.relay.events import ConnectionClosed, ConnectionOpened, FrameReceived
from src.relay.transport.base import RelayConnection, Transport

if TYPE_CHECKING:
    from src.relay.relay import SignalingRelay

logger = logging.getLogger(__name__)

# Close code sent when the server is at capacity ("Try Again Later")
CLOSE_CODE_TRY_AGAIN_LATER = 1013


class WebSocketConnection(RelayConnection):
    """Relay connection backed by a WebSocket.

    Outbound frames are queued and written by a dedicated sender task in the
    order they were enqueued.
    """

    def __init__(
        self,
        websocket: ServerConnection,
        connection_id: str,
        queue_size: int = 256,
    ) -> None:
        """Initialize WebSocket connection.

        Args:
            websocket: WebSocket connection
            connection_id: Unique connection identifier
            queue_size: Maximum number of pending outbound frames
        """
        self._websocket = websocket
        self._connection_id = connection_id
        self._connected = True
        self._outbound: asyncio.Queue[str | None] = asyncio.Queue(maxsize=queue_size)
        self._sender_task: asyncio.Task[None] | None = None

        logger.info(
            "WebSocket connection initialized",
            extra={"connection_id": connection_id, "remote": websocket.remote_address},
        )

    @property
    def connection_id(self) -> str:
        """Get unique connection identifier."""
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        """Check if the connection is still active."""
        return self._connected and self._websocket.state == State.OPEN

    def enqueue(self, frame: str) -> bool:
        """Queue one outbound text frame without blocking.

        Args:
            frame: Serialized JSON message

        Returns:
            True if queued, False if the connection is closed or the queue is full
        """
        if not self.is_connected:
            return False

        try:
            self._outbound.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(
                "Outbound queue full, dropping frame",
                extra={"connection_id": self._connection_id, "size": self._outbound.qsize()},
            )
            return False
        return True

    def start_sender(self) -> None:
        """Start the task that drains the outbound queue."""
        if self._sender_task is None:
            self._sender_task = asyncio.create_task(
                self._send_loop(), name=f"ws-sender-{self._connection_id}"
            )

    async def _send_loop(self) -> None:
        while True:
            frame = await self._outbound.get()
            if frame is None:
                break

            try:
                await self._websocket.send(frame)
            except websockets.exceptions.ConnectionClosed:
                self._connected = False
                break

    async def close(self) -> None:
        """Stop the sender and close the WebSocket. Safe to call more than once."""
        was_connected = self._connected
        self._connected = False

        if self._sender_task is not None:
            task, self._sender_task = self._sender_task, None
            # Let already-queued frames go out before the socket is closed.
            # A full queue means the client is not reading; cancel instead.
            try:
                self._outbound.put_nowait(None)
            except asyncio.QueueFull:
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if not was_connected:
            return

        logger.info("Closing WebSocket connection", extra={"connection_id": self._connection_id})
        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during connection close",
                extra={"connection_id": self._connection_id, "error": str(e)},
            )


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages the WebSocket server lifecycle and registers every accepted
    connection with the signaling relay.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        max_connections: int = 100,
        max_message_bytes: int = 2**16,
        outbound_queue_size: int = 256,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port (0 picks a free port)
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum size of one inbound frame
            outbound_queue_size: Pending outbound frames allowed per connection
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._outbound_queue_size = outbound_queue_size
        self._server: Any = None  # websockets Server type
        self._relay: SignalingRelay | None = None
        self._connections: dict[str, WebSocketConnection] = {}
        self._running = False

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "websocket"

    @property
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        return self._running

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def port(self) -> int:
        """Bound port (the actual port when configured with 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    async def start(self, relay: "SignalingRelay") -> None:
        """Start the WebSocket server.

        Args:
            relay: Relay receiving connection events

        Raises:
            RuntimeError: If the transport is already running or fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        self._relay = relay
        try:
            self._server = await serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
            self._running = True

            logger.info(
                "WebSocket server started",
                extra={"host": self._host, "port": self.port},
            )

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server and close all connections. Idempotent."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")
        self._running = False

        for connection in list(self._connections.values()):
            await connection.close()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle one WebSocket connection for its whole lifetime.

        Args:
            websocket: WebSocket connection
        """
        if self._relay is None:
            await websocket.close()
            return

        if len(self._connections) >= self._max_connections:
            logger.warning(
                "Connection limit reached, rejecting client",
                extra={"remote": websocket.remote_address, "limit": self._max_connections},
            )
            await websocket.close(code=CLOSE_CODE_TRY_AGAIN_LATER, reason="Server full")
            return

        connection_id = f"ws-{uuid.uuid4().hex}"
        connection = WebSocketConnection(websocket, connection_id, self._outbound_queue_size)
        self._connections[connection_id] = connection

        relay = self._relay
        relay.submit(ConnectionOpened(connection))
        connection.start_sender()

        try:
            async for raw_message in websocket:
                if not isinstance(raw_message, str):
                    logger.warning(
                        "Received non-text WebSocket message, skipping",
                        extra={"connection_id": connection_id},
                    )
                    continue
                relay.submit(FrameReceived(connection_id, raw_message))

        except websockets.exceptions.ConnectionClosed:
            logger.info("WebSocket connection closed by client", extra={"connection_id": connection_id})
        except Exception as e:
            logger.error(
                "Error in connection handler",
                extra={"connection_id": connection_id, "error": str(e)},
            )
        finally:
            relay.submit(ConnectionClosed(connection_id))
            self._connections.pop(connection_id, None)
            await connection.close()
            logger.info("WebSocket connection closed", extra={"connection_id": connection_id})
