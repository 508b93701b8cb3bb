"""Client side of the relay connection.

Serializes outbound requests with the shared protocol models and yields
validated relay messages. Frames that fail validation are logged and skipped.
"""

import logging
from collections.abc import AsyncIterator
from typing import Any

import websockets
from pydantic import BaseModel, ValidationError
from websockets.asyncio.client import ClientConnection

from src.common.types import ConnectionID, RoomID, SignalPayload
from src.relay.protocol import (
    AnswerMessage,
    ChatSendMessage,
    IceCandidateMessage,
    JoinMessage,
    KickMessage,
    OfferMessage,
    ServerMessage,
    SetMutedMessage,
    parse_server_message,
)

logger = logging.getLogger(__name__)


class SignalingClient:
    """WebSocket connection to the signaling relay.

    Implements the mesh's ``SignalingSender`` protocol.
    """

    def __init__(self, server_url: str) -> None:
        """Initialize signaling client.

        Args:
            server_url: Relay WebSocket URL (e.g., ws://localhost:8080)
        """
        self.server_url = server_url
        self._websocket: ClientConnection | None = None

    @property
    def is_connected(self) -> bool:
        return self._websocket is not None

    async def connect(self) -> None:
        """Open the relay connection.

        Raises:
            OSError: If the relay cannot be reached
            websockets.exceptions.InvalidHandshake: If the upgrade is refused
        """
        self._websocket = await websockets.connect(self.server_url)
        logger.info("Connected to relay", extra={"server_url": self.server_url})

    async def close(self) -> None:
        """Close the relay connection. Safe to call more than once."""
        websocket, self._websocket = self._websocket, None
        if websocket is not None:
            await websocket.close()
            logger.info("Disconnected from relay")

    async def send(self, message: BaseModel) -> None:
        """Send one request.

        Raises:
            ConnectionError: If the client is not connected or the socket closed
        """
        if self._websocket is None:
            raise ConnectionError("Not connected to relay")

        try:
            await self._websocket.send(message.model_dump_json())
        except websockets.exceptions.ConnectionClosed as e:
            raise ConnectionError(f"Relay connection closed: {e}") from e

    async def messages(self) -> AsyncIterator[ServerMessage]:
        """Yield relay messages until the connection closes."""
        if self._websocket is None:
            raise ConnectionError("Not connected to relay")

        try:
            async for raw in self._websocket:
                try:
                    yield parse_server_message(raw)
                except ValidationError as e:
                    logger.warning("Invalid relay message", extra={"errors": e.error_count()})
        except websockets.exceptions.ConnectionClosed:
            logger.info("Relay connection closed")

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def join(self, room_id: RoomID, username: str, media_tag: str | None = None) -> None:
        await self.send(JoinMessage(room_id=room_id, username=username, media_tag=media_tag))

    async def send_offer(self, target_id: ConnectionID, payload: SignalPayload) -> None:
        await self.send(OfferMessage(target_id=target_id, payload=payload))

    async def send_answer(self, target_id: ConnectionID, payload: SignalPayload) -> None:
        await self.send(AnswerMessage(target_id=target_id, payload=payload))

    async def send_ice_candidate(self, target_id: ConnectionID, payload: SignalPayload) -> None:
        await self.send(IceCandidateMessage(target_id=target_id, payload=payload))

    async def send_chat(self, text: Any) -> None:
        await self.send(ChatSendMessage(text=text))

    async def set_muted(self, muted: bool) -> None:
        await self.send(SetMutedMessage(muted=muted))

    async def kick(self, target_id: ConnectionID) -> None:
        await self.send(KickMessage(target_id=target_id))
