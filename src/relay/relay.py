"""Signaling relay coordinator.

``SignalingRelay`` is the single writer for all room state. Transports submit
connection events to its mailbox; one coordinating task applies them strictly
in arrival order, so every room observes a total order of join, leave and kick
events without any locking.

Example:
    ```python
    relay = SignalingRelay(RoomRegistry())
    await relay.start()

    relay.submit(ConnectionOpened(handle))
    relay.submit(FrameReceived(handle.connection_id, '{"type": "join", ...}'))
    relay.submit(ConnectionClosed(handle.connection_id))

    await relay.stop()
    ```
"""

import asyncio
import logging

from pydantic import BaseModel, ValidationError

from src.common.types import ConnectionID
from src.relay.events import ConnectionClosed, ConnectionOpened, FrameReceived, RelayEvent
from src.relay.protocol import ErrorCode, ProtocolErrorMessage, parse_client_message
from src.relay.rooms import RoomRegistry
from src.relay.session import RelayError, RelaySession
from src.relay.transport.base import RelayConnection

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Routes signaling messages between the members of each room.

    Thread-safety: ``submit`` may be called from any coroutine on the event
    loop. Everything else runs on the coordinating task.
    """

    def __init__(self, registry: RoomRegistry) -> None:
        """Initialize relay.

        Args:
            registry: Room registry owned by this relay
        """
        self._registry = registry
        self._connections: dict[ConnectionID, RelayConnection] = {}
        self._sessions: dict[ConnectionID, RelaySession] = {}
        self._mailbox: asyncio.Queue[RelayEvent | None] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None

    @property
    def registry(self) -> RoomRegistry:
        return self._registry

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def session_for(self, identity: ConnectionID) -> RelaySession | None:
        return self._sessions.get(identity)

    # ------------------------------------------------------------------
    # Mailbox
    # ------------------------------------------------------------------

    def submit(self, event: RelayEvent) -> None:
        """Queue an event for the coordinating task."""
        self._mailbox.put_nowait(event)

    async def start(self) -> None:
        """Start the coordinating task.

        Raises:
            RuntimeError: If the relay is already running
        """
        if self.is_running:
            raise RuntimeError("Signaling relay is already running")

        self._task = asyncio.create_task(self.run(), name="signaling-relay")
        logger.info("Signaling relay started")

    async def stop(self) -> None:
        """Drain pending events, terminate every session and stop. Idempotent."""
        if self._task is None:
            return

        self._mailbox.put_nowait(None)
        task, self._task = self._task, None
        await task

        for identity in list(self._sessions):
            self._disconnect(identity)

        logger.info("Signaling relay stopped")

    async def run(self) -> None:
        """Apply mailbox events one at a time until a stop sentinel arrives."""
        while True:
            event = await self._mailbox.get()
            if event is None:
                break
            self.apply(event)

    def apply(self, event: RelayEvent) -> None:
        """Apply a single event synchronously."""
        match event:
            case ConnectionOpened(handle=handle):
                self._connect(handle)
            case FrameReceived(connection_id=connection_id, raw=raw):
                self._dispatch(connection_id, raw)
            case ConnectionClosed(connection_id=connection_id):
                self._disconnect(connection_id)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def deliver(self, identity: ConnectionID, message: BaseModel) -> bool:
        """Queue a message for one connection without blocking.

        Returns:
            True if the frame was queued, False if the connection is gone or
            its outbound queue is full
        """
        handle = self._connections.get(identity)
        if handle is None or not handle.is_connected:
            logger.debug(
                "Dropping message for closed connection",
                extra={"identity": identity, "type": getattr(message, "type", None)},
            )
            return False

        return handle.enqueue(message.model_dump_json())

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------

    def _connect(self, handle: RelayConnection) -> None:
        identity = handle.connection_id
        if identity in self._connections:
            logger.warning("Duplicate connection id ignored", extra={"identity": identity})
            return

        self._connections[identity] = handle
        self._sessions[identity] = RelaySession(identity, self)
        logger.info(
            "Connection registered",
            extra={"identity": identity, "connections": len(self._connections)},
        )

    def _dispatch(self, identity: ConnectionID, raw: str | bytes) -> None:
        session = self._sessions.get(identity)
        if session is None:
            logger.debug("Frame for unknown connection", extra={"identity": identity})
            return

        try:
            message = parse_client_message(raw)
            session.handle(message)
        except ValidationError as e:
            logger.warning(
                "Invalid client message",
                extra={"identity": identity, "errors": e.error_count()},
            )
            self._report(identity, "Invalid message", ErrorCode.INVALID_MESSAGE)
        except RelayError as e:
            logger.info(
                "Request rejected",
                extra={"identity": identity, "code": e.code.value, "reason": str(e)},
            )
            self._report(identity, str(e), e.code)
        except Exception as e:
            logger.error(
                "Unexpected error handling message",
                extra={"identity": identity, "error": str(e)},
                exc_info=True,
            )
            self._report(identity, "Internal server error", ErrorCode.INTERNAL_ERROR)

    def _disconnect(self, identity: ConnectionID) -> None:
        session = self._sessions.pop(identity, None)
        self._connections.pop(identity, None)
        if session is None:
            return

        try:
            session.terminate()
        except Exception as e:
            logger.error(
                "Error terminating session",
                extra={"identity": identity, "error": str(e)},
                exc_info=True,
            )

        logger.info(
            "Connection unregistered",
            extra={"identity": identity, "connections": len(self._connections)},
        )

    def _report(self, identity: ConnectionID, message: str, code: ErrorCode) -> None:
        self.deliver(identity, ProtocolErrorMessage(message=message, code=code))
