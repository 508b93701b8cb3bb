"""Relay server entry point.

Wires the pieces together:
1. Room registry and signaling relay coordinator
2. WebSocket transport feeding the relay mailbox
3. HTTP side endpoints (health, version, room identifiers)
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite

from src.relay.config import RelayConfig
from src.relay.health import setup_health_routes
from src.relay.relay import SignalingRelay
from src.relay.rooms import RoomRegistry
from src.relay.transport.websocket_transport import WebSocketTransport

logger = logging.getLogger(__name__)


class RelayServer:
    """Owns the relay, its transport and the health HTTP server.

    Example:
        ```python
        server = RelayServer(RelayConfig())
        await server.start()
        try:
            await server.wait_closed()
        finally:
            await server.stop()
        ```
    """

    def __init__(self, config: RelayConfig) -> None:
        self.config = config
        self.registry = RoomRegistry()
        self.relay = SignalingRelay(self.registry)

        ws_config = config.transport.websocket
        self.transport = WebSocketTransport(
            host=ws_config.host,
            port=ws_config.port,
            max_connections=ws_config.max_connections,
            max_message_bytes=ws_config.max_message_bytes,
            outbound_queue_size=ws_config.outbound_queue_size,
        )
        self._runner: AppRunner | None = None
        self._closed = asyncio.Event()

    @property
    def health_port(self) -> int:
        return self.config.transport.websocket.port + self.config.health.port_offset

    async def start(self) -> None:
        """Start the relay coordinator, the WebSocket server and health endpoints.

        Raises:
            RuntimeError: If already started or the transport fails to start
            OSError: If a port cannot be bound
        """
        await self.relay.start()
        await self.transport.start(self.relay)

        if self.config.health.enabled:
            health_app = Application()
            setup_health_routes(health_app, self.relay)

            self._runner = AppRunner(health_app)
            await self._runner.setup()
            site = TCPSite(self._runner, self.config.transport.websocket.host, self.health_port)
            await site.start()
            logger.info("Health check server started", extra={"port": self.health_port})

    async def wait_closed(self) -> None:
        """Block until ``stop`` is called."""
        await self._closed.wait()

    async def stop(self) -> None:
        """Stop everything in reverse start order. Idempotent."""
        logger.info("Shutting down relay server")

        try:
            await asyncio.wait_for(
                self.transport.stop(), timeout=self.config.graceful_shutdown_timeout_s
            )
        except TimeoutError:
            logger.warning("Transport did not stop within the graceful shutdown timeout")
        logger.info("WebSocket transport stopped")

        await self.relay.stop()

        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            logger.info("Health check server stopped")

        self._closed.set()
        logger.info("Relay server stopped")


async def start_server(config_path: Path) -> None:
    """Start the relay server and run until interrupted.

    Args:
        config_path: Path to YAML config file (defaults are used if missing)
    """
    config = RelayConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=config.log_level_value,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    server = RelayServer(config)
    await server.start()

    try:
        await server.wait_closed()
    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        await server.stop()


def main() -> None:
    """Entry point for the relay server."""
    parser = argparse.ArgumentParser(description="Huddle signaling relay")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "relay.yaml",
        help="Path to relay config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Relay server interrupted")


if __name__ == "__main__":
    main()
