"""Per-connection signaling session.

Each relay connection owns one ``RelaySession``. The session maps the
connection to its room and display name and implements every client
operation: join, handshake relaying, chat, mute, kick and termination.

Sessions never perform I/O themselves. Outbound messages go through the
``RelayContext`` (the coordinating ``SignalingRelay``), whose delivery is a
non-blocking enqueue, so a handler runs to completion without yielding.
"""

import logging
import time
from enum import Enum
from typing import Any, Protocol

from pydantic import BaseModel

from src.common.types import ConnectionID, RoomID, SignalPayload
from src.relay.protocol import (
    AnswerMessage,
    ChatReceivedMessage,
    ChatSendMessage,
    ClientMessage,
    ErrorCode,
    IceCandidateMessage,
    JoinConfirmedMessage,
    JoinMessage,
    KickMessage,
    OfferMessage,
    ParticipantJoinedMessage,
    ParticipantKickedMessage,
    ParticipantLeftMessage,
    ParticipantMutedMessage,
    ParticipantSummary,
    RelayedAnswerMessage,
    RelayedIceCandidateMessage,
    RelayedOfferMessage,
    SetMutedMessage,
    YouWereKickedMessage,
)
from src.relay.rooms import Room, RoomRegistry
from src.relay.sanitize import sanitize_message, sanitize_username

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session state machine states.

    State Transitions:
    - UNJOINED → JOINED (on successful join)
    - UNJOINED → TERMINATED (on disconnect before joining)
    - JOINED → TERMINATED (on disconnect or kick)

    States:
    - UNJOINED: Connected, not yet a room member
    - JOINED: Member of exactly one room
    - TERMINATED: Left, kicked or disconnected; every further operation is a no-op
    """

    UNJOINED = "unjoined"
    JOINED = "joined"
    TERMINATED = "terminated"


# Valid state transitions
VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.UNJOINED: {SessionState.JOINED, SessionState.TERMINATED},
    SessionState.JOINED: {SessionState.TERMINATED},
    SessionState.TERMINATED: set(),  # Terminal state
}


class RelayError(Exception):
    """Base exception for rejected client requests.

    Carries the ``ErrorCode`` reported back to the client in a
    ``protocol_error`` message.
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class ProtocolViolationError(RelayError):
    """Raised when a request is not valid in the session's current state."""

    code = ErrorCode.PROTOCOL_VIOLATION


class AuthorizationError(RelayError):
    """Raised when the caller is not allowed to perform a request."""

    code = ErrorCode.UNAUTHORIZED


class RelayContext(Protocol):
    """What a session needs from the coordinating relay."""

    @property
    def registry(self) -> RoomRegistry: ...

    def deliver(self, identity: ConnectionID, message: BaseModel) -> bool: ...

    def session_for(self, identity: ConnectionID) -> "RelaySession | None": ...


class RelaySession:
    """Signaling session for one connection.

    Thread-safety: NOT thread-safe. Only the relay's coordinating task may
    call into a session.
    """

    def __init__(self, identity: ConnectionID, relay: RelayContext) -> None:
        """Initialize session.

        Args:
            identity: Connection identity, also used as the relay address
            relay: Coordinating relay used for room lookup and delivery
        """
        self.identity = identity
        self._relay = relay
        self.state: SessionState = SessionState.UNJOINED
        self.room_id: RoomID | None = None
        self.username: str | None = None

    @property
    def is_joined(self) -> bool:
        return self.state == SessionState.JOINED

    @property
    def is_terminated(self) -> bool:
        return self.state == SessionState.TERMINATED

    def handle(self, message: ClientMessage) -> None:
        """Apply one validated client message.

        Args:
            message: Parsed client message

        Raises:
            RelayError: If the request is rejected
        """
        if self.is_terminated:
            logger.debug(
                "Ignoring message on terminated session",
                extra={"identity": self.identity, "type": message.type},
            )
            return

        match message:
            case JoinMessage(room_id=room_id, username=username, media_tag=media_tag):
                self.join(room_id, username, media_tag)
            case OfferMessage(target_id=target_id, payload=payload):
                self.relay_signal(message, target_id, payload)
            case AnswerMessage(target_id=target_id, payload=payload):
                self.relay_signal(message, target_id, payload)
            case IceCandidateMessage(target_id=target_id, payload=payload):
                self.relay_signal(message, target_id, payload)
            case ChatSendMessage(text=text):
                self.send_message(text)
            case SetMutedMessage(muted=muted):
                self.set_muted(muted)
            case KickMessage(target_id=target_id):
                self.kick(target_id)

    def transition_state(self, new_state: SessionState) -> None:
        """Transition session to a new state with validation.

        Args:
            new_state: Target state

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state

        logger.debug(
            "Session state transition",
            extra={
                "identity": self.identity,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def join(self, room_id: RoomID, raw_username: Any, media_tag: str | None = None) -> None:
        """Join (or create) a room.

        Raises:
            ProtocolViolationError: If the session already joined a room
        """
        if self.state != SessionState.UNJOINED:
            raise ProtocolViolationError("Already joined a room")

        username = sanitize_username(raw_username)
        room = self._relay.registry.get_or_create(room_id, self.identity)
        participant = room.add_participant(self.identity, username, media_tag)

        self.transition_state(SessionState.JOINED)
        self.room_id = room_id
        self.username = username

        others = [
            ParticipantSummary.from_info(p.to_info())
            for p in room.list_participants()
            if p.identity != self.identity
        ]
        self._relay.deliver(
            self.identity,
            JoinConfirmedMessage(
                identity=self.identity,
                room_id=room_id,
                others=others,
                is_creator=room.is_creator(self.identity),
            ),
        )
        self._broadcast(
            room,
            ParticipantJoinedMessage(
                identity=self.identity,
                username=participant.username,
                media_tag=participant.media_tag,
            ),
            exclude={self.identity},
        )

        logger.info(
            "Participant joined room",
            extra={
                "identity": self.identity,
                "room_id": room_id,
                "username": username,
                "participants": len(room),
            },
        )

    def relay_signal(
        self,
        message: OfferMessage | AnswerMessage | IceCandidateMessage,
        target_id: ConnectionID,
        payload: SignalPayload,
    ) -> None:
        """Forward a handshake message verbatim to one room member.

        Targets that are not live members of the caller's room are dropped
        without notice.
        """
        room = self._require_room()
        if room is None or not room.has_participant(target_id):
            logger.debug(
                "Dropping signal for unknown target",
                extra={"identity": self.identity, "target_id": target_id, "type": message.type},
            )
            return

        relayed: BaseModel
        match message:
            case OfferMessage():
                relayed = RelayedOfferMessage(from_id=self.identity, payload=payload)
            case AnswerMessage():
                relayed = RelayedAnswerMessage(from_id=self.identity, payload=payload)
            case IceCandidateMessage():
                relayed = RelayedIceCandidateMessage(from_id=self.identity, payload=payload)

        self._relay.deliver(target_id, relayed)

    def send_message(self, raw_text: Any) -> None:
        """Broadcast a chat message to the whole room, sender included."""
        room = self._require_room()
        text = sanitize_message(raw_text)
        if room is None or not text:
            return

        self._broadcast(
            room,
            ChatReceivedMessage(
                from_id=self.identity,
                username=self.username or "",
                text=text,
                timestamp=int(time.time() * 1000),
            ),
        )

    def set_muted(self, muted: bool) -> None:
        """Update the caller's mute flag and tell the other members."""
        room = self._require_room()
        if room is None:
            return

        participant = room.get_participant(self.identity)
        if participant is None:
            return

        participant.muted = muted
        self._broadcast(
            room,
            ParticipantMutedMessage(identity=self.identity, muted=muted),
            exclude={self.identity},
        )

    def kick(self, target_id: ConnectionID) -> None:
        """Remove another participant from the room.

        Raises:
            AuthorizationError: If the caller is not the room creator
            RelayError: If the caller targets itself
        """
        room = self._require_room()
        if room is None:
            return

        if not room.is_creator(self.identity):
            raise AuthorizationError("Only the room creator can kick users")

        if target_id == self.identity:
            raise RelayError("Cannot kick yourself", code=ErrorCode.INVALID_TARGET)

        if room.remove_participant(target_id) is None:
            logger.debug(
                "Kick target not in room",
                extra={"identity": self.identity, "target_id": target_id},
            )
            return

        self._relay.deliver(target_id, YouWereKickedMessage())
        self._broadcast(
            room,
            ParticipantKickedMessage(identity=target_id),
            exclude={self.identity},
        )

        target_session = self._relay.session_for(target_id)
        if target_session is not None:
            target_session.detach()

        logger.info(
            "Participant kicked",
            extra={"room_id": room.room_id, "by": self.identity, "target_id": target_id},
        )

    def detach(self) -> None:
        """Drop the room association after being kicked.

        The participant entry has already been removed by the kicker, so no
        notifications are sent.
        """
        if self.state != SessionState.JOINED:
            return
        self.transition_state(SessionState.TERMINATED)

    def terminate(self) -> None:
        """Leave the room on disconnect. Safe to call more than once."""
        if self.is_terminated:
            return

        if self.state == SessionState.UNJOINED:
            self.transition_state(SessionState.TERMINATED)
            return

        room = self._relay.registry.get(self.room_id) if self.room_id else None
        self.transition_state(SessionState.TERMINATED)
        if room is None:
            return

        room.remove_participant(self.identity)
        self._broadcast(room, ParticipantLeftMessage(identity=self.identity))

        if room.is_empty():
            self._relay.registry.remove(room.room_id)

        logger.info(
            "Participant left room",
            extra={"identity": self.identity, "room_id": room.room_id, "remaining": len(room)},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_room(self) -> Room | None:
        """Return the caller's room, rejecting requests made before joining.

        Raises:
            RelayError: If the session has not joined a room yet
        """
        if self.state == SessionState.UNJOINED:
            raise RelayError("Join a room first", code=ErrorCode.NOT_JOINED)
        if self.room_id is None:
            return None
        return self._relay.registry.get(self.room_id)

    def _broadcast(
        self,
        room: Room,
        message: BaseModel,
        exclude: set[ConnectionID] | None = None,
    ) -> None:
        for identity in room.member_ids():
            if exclude and identity in exclude:
                continue
            self._relay.deliver(identity, message)
