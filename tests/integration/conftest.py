"""Integration test fixtures and utilities.

Provides shared fixtures for:
- Port allocation for the relay and its health endpoints
- Relay server lifecycle on real sockets
- JSON WebSocket clients with receive timeouts
"""

import asyncio
import json
import logging
import socket
from collections.abc import AsyncIterator
from typing import Any

import pytest
import websockets
from websockets.asyncio.client import ClientConnection

from src.relay.config import HealthConfig, RelayConfig, TransportConfig, WebSocketConfig
from src.relay.server import RelayServer

logger = logging.getLogger(__name__)


# ============================================================================
# Utility Functions for Port Allocation
# ============================================================================


def get_free_port() -> int:
    """Get a free TCP port for binding.

    Notes:
        The port is freed immediately after discovery, so there's a small
        race condition window, but this is acceptable for tests.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.listen(1)
        port: int = s.getsockname()[1]
    return port


def get_free_port_pair(attempts: int = 20) -> int:
    """Get a port ``p`` such that both ``p`` and ``p + 1`` are free."""
    for _ in range(attempts):
        port = get_free_port()
        if port >= 65534:
            continue
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind(("", port + 1))
            except OSError:
                continue
        return port
    raise RuntimeError("Could not find two adjacent free ports")


# ============================================================================
# Relay Server
# ============================================================================


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig(
        transport=TransportConfig(
            websocket=WebSocketConfig(host="127.0.0.1", port=get_free_port_pair(), max_connections=10)
        ),
        health=HealthConfig(enabled=True, port_offset=1),
        graceful_shutdown_timeout_s=2,
    )


@pytest.fixture
async def relay_server(relay_config: RelayConfig) -> AsyncIterator[RelayServer]:
    """Start a relay server on free ports and stop it after the test."""
    server = RelayServer(relay_config)
    await server.start()
    logger.info("Test relay started", extra={"port": relay_config.transport.websocket.port})
    yield server
    await server.stop()


@pytest.fixture
def relay_url(relay_config: RelayConfig) -> str:
    return f"ws://127.0.0.1:{relay_config.transport.websocket.port}"


@pytest.fixture
def health_url(relay_server: RelayServer) -> str:
    return f"http://127.0.0.1:{relay_server.health_port}"


# ============================================================================
# WebSocket Clients
# ============================================================================


class JsonClient:
    """Relay client speaking JSON frames, for protocol-level tests."""

    def __init__(self, websocket: ClientConnection) -> None:
        self.websocket = websocket

    async def send(self, message: dict[str, Any]) -> None:
        await self.websocket.send(json.dumps(message))

    async def recv(self, timeout: float = 2.0) -> dict[str, Any]:
        raw = await asyncio.wait_for(self.websocket.recv(), timeout=timeout)
        return json.loads(raw)

    async def recv_type(self, message_type: str, timeout: float = 2.0) -> dict[str, Any]:
        """Receive until a message of ``message_type`` arrives."""
        while True:
            message = await self.recv(timeout=timeout)
            if message["type"] == message_type:
                return message

    async def expect_silence(self, timeout: float = 0.2) -> None:
        with pytest.raises(TimeoutError):
            await self.recv(timeout=timeout)

    async def join(self, room_id: str, username: str) -> dict[str, Any]:
        await self.send({"type": "join", "room_id": room_id, "username": username})
        return await self.recv_type("join_confirmed")

    async def close(self) -> None:
        await self.websocket.close()


@pytest.fixture
async def connect_client(relay_server: RelayServer, relay_url: str) -> AsyncIterator[Any]:
    """Factory fixture opening JSON clients that are closed after the test."""
    clients: list[JsonClient] = []

    async def _connect() -> JsonClient:
        client = JsonClient(await websockets.connect(relay_url))
        clients.append(client)
        return client

    yield _connect

    for client in clients:
        await client.close()
