"""Signaling message protocol definitions.

Defines Pydantic models for every message exchanged between clients and the
relay. Messages are JSON objects carried in WebSocket text frames and tagged
by a ``type`` field. Each direction is a closed, discriminated union so that
dispatch can pattern-match on the model class instead of looking up handlers
by string.
"""

from enum import StrEnum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, TypeAdapter

from src.common.types import ParticipantInfo


class ErrorCode(StrEnum):
    """Codes carried by ``protocol_error`` messages."""

    INVALID_MESSAGE = "INVALID_MESSAGE"
    PROTOCOL_VIOLATION = "PROTOCOL_VIOLATION"
    NOT_JOINED = "NOT_JOINED"
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_TARGET = "INVALID_TARGET"
    INTERNAL_ERROR = "INTERNAL_ERROR"


# ============================================================================
# Client → Relay
# ============================================================================


class JoinMessage(BaseModel):
    """Client → Relay: join (or create) a room.

    ``username`` is deliberately untyped: it is sanitized by the relay, which
    substitutes a default for anything unusable instead of rejecting the join.
    """

    type: Literal["join"] = "join"
    room_id: str = Field(..., min_length=1, max_length=128, description="Room identifier")
    username: Any = Field(default=None, description="Requested display name")
    media_tag: str | None = Field(
        default=None, max_length=256, description="Opaque media-session tag"
    )


class OfferMessage(BaseModel):
    """Client → Relay: session offer for one peer."""

    type: Literal["offer"] = "offer"
    target_id: str = Field(..., min_length=1, description="Identity of the addressed peer")
    payload: Any = Field(default=None, description="Opaque handshake payload")


class AnswerMessage(BaseModel):
    """Client → Relay: session answer for one peer."""

    type: Literal["answer"] = "answer"
    target_id: str = Field(..., min_length=1, description="Identity of the addressed peer")
    payload: Any = Field(default=None, description="Opaque handshake payload")


class IceCandidateMessage(BaseModel):
    """Client → Relay: ICE candidate for one peer."""

    type: Literal["ice_candidate"] = "ice_candidate"
    target_id: str = Field(..., min_length=1, description="Identity of the addressed peer")
    payload: Any = Field(default=None, description="Opaque candidate payload")


class ChatSendMessage(BaseModel):
    """Client → Relay: chat message for the whole room."""

    type: Literal["chat_send"] = "chat_send"
    text: Any = Field(default=None, description="Raw message text")


class SetMutedMessage(BaseModel):
    """Client → Relay: update the caller's mute flag."""

    type: Literal["set_muted"] = "set_muted"
    muted: bool = Field(..., description="New mute state")


class KickMessage(BaseModel):
    """Client → Relay: remove a participant (room creator only)."""

    type: Literal["kick"] = "kick"
    target_id: str = Field(..., min_length=1, description="Identity to remove")


ClientMessage = Annotated[
    JoinMessage
    | OfferMessage
    | AnswerMessage
    | IceCandidateMessage
    | ChatSendMessage
    | SetMutedMessage
    | KickMessage,
    Field(discriminator="type"),
]


# ============================================================================
# Relay → Client
# ============================================================================


class ParticipantSummary(BaseModel):
    """Roster entry inside ``join_confirmed``."""

    identity: str
    username: str
    media_tag: str | None = None
    muted: bool = False

    @classmethod
    def from_info(cls, info: ParticipantInfo) -> "ParticipantSummary":
        return cls.model_validate(info)


class JoinConfirmedMessage(BaseModel):
    """Relay → Client: join accepted.

    ``others`` never contains the joining client itself.
    """

    type: Literal["join_confirmed"] = "join_confirmed"
    identity: str = Field(..., description="The joiner's own connection identity")
    room_id: str
    others: list[ParticipantSummary] = Field(default_factory=list)
    is_creator: bool = False


class ParticipantJoinedMessage(BaseModel):
    """Relay → other members: a new participant joined."""

    type: Literal["participant_joined"] = "participant_joined"
    identity: str
    username: str
    media_tag: str | None = None


class RelayedOfferMessage(BaseModel):
    """Relay → Client: offer from another peer."""

    type: Literal["offer"] = "offer"
    from_id: str
    payload: Any = None


class RelayedAnswerMessage(BaseModel):
    """Relay → Client: answer from another peer."""

    type: Literal["answer"] = "answer"
    from_id: str
    payload: Any = None


class RelayedIceCandidateMessage(BaseModel):
    """Relay → Client: ICE candidate from another peer."""

    type: Literal["ice_candidate"] = "ice_candidate"
    from_id: str
    payload: Any = None


class ChatReceivedMessage(BaseModel):
    """Relay → all members (sender included): chat message."""

    type: Literal["chat_received"] = "chat_received"
    from_id: str
    username: str
    text: str
    timestamp: int = Field(..., description="Server time in epoch milliseconds")


class ParticipantMutedMessage(BaseModel):
    """Relay → other members: a participant changed its mute flag."""

    type: Literal["participant_muted"] = "participant_muted"
    identity: str
    muted: bool


class YouWereKickedMessage(BaseModel):
    """Relay → kicked client."""

    type: Literal["you_were_kicked"] = "you_were_kicked"


class ParticipantKickedMessage(BaseModel):
    """Relay → remaining members: a participant was kicked."""

    type: Literal["participant_kicked"] = "participant_kicked"
    identity: str


class ParticipantLeftMessage(BaseModel):
    """Relay → remaining members: a participant disconnected."""

    type: Literal["participant_left"] = "participant_left"
    identity: str


class ProtocolErrorMessage(BaseModel):
    """Relay → Client: request rejected or failed."""

    type: Literal["protocol_error"] = "protocol_error"
    message: str = Field(..., description="Error description")
    code: ErrorCode = Field(default=ErrorCode.INTERNAL_ERROR, description="Error code")


ServerMessage = Annotated[
    JoinConfirmedMessage
    | ParticipantJoinedMessage
    | RelayedOfferMessage
    | RelayedAnswerMessage
    | RelayedIceCandidateMessage
    | ChatReceivedMessage
    | ParticipantMutedMessage
    | YouWereKickedMessage
    | ParticipantKickedMessage
    | ParticipantLeftMessage
    | ProtocolErrorMessage,
    Field(discriminator="type"),
]

_CLIENT_MESSAGE_ADAPTER: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)
_SERVER_MESSAGE_ADAPTER: TypeAdapter[ServerMessage] = TypeAdapter(ServerMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Decode and validate one client frame.

    Args:
        raw: JSON text received from a client

    Returns:
        The validated client message model

    Raises:
        pydantic.ValidationError: If the frame is not valid JSON, has an
            unknown ``type``, or fails field validation
    """
    return _CLIENT_MESSAGE_ADAPTER.validate_json(raw)


def parse_server_message(raw: str | bytes) -> ServerMessage:
    """Decode and validate one relay frame (client side).

    Raises:
        pydantic.ValidationError: If the frame is not a known relay message
    """
    return _SERVER_MESSAGE_ADAPTER.validate_json(raw)
