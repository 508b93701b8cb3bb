"""Unit tests for signaling message models."""

import json

import pytest
from pydantic import ValidationError

from src.relay.protocol import (
    ChatSendMessage,
    ErrorCode,
    IceCandidateMessage,
    JoinConfirmedMessage,
    JoinMessage,
    KickMessage,
    OfferMessage,
    ParticipantSummary,
    ProtocolErrorMessage,
    RelayedOfferMessage,
    SetMutedMessage,
    YouWereKickedMessage,
    parse_client_message,
    parse_server_message,
)


class TestClientMessages:
    """Test parsing of client frames."""

    def test_join(self) -> None:
        message = parse_client_message(
            json.dumps({"type": "join", "room_id": "r1", "username": "alice", "media_tag": "m"})
        )

        assert isinstance(message, JoinMessage)
        assert message.room_id == "r1"
        assert message.username == "alice"
        assert message.media_tag == "m"

    def test_join_username_is_untyped(self) -> None:
        """Unusable usernames reach the sanitizer instead of failing validation."""
        message = parse_client_message('{"type": "join", "room_id": "r1", "username": 42}')

        assert isinstance(message, JoinMessage)
        assert message.username == 42

    def test_join_requires_room_id(self) -> None:
        with pytest.raises(ValidationError):
            parse_client_message('{"type": "join", "room_id": ""}')

    def test_offer_payload_is_opaque(self) -> None:
        payload = {"type": "offer", "sdp": "v=0...", "extra": [1, 2, {"x": None}]}
        message = parse_client_message(
            json.dumps({"type": "offer", "target_id": "b", "payload": payload})
        )

        assert isinstance(message, OfferMessage)
        assert message.payload == payload

    def test_ice_candidate(self) -> None:
        message = parse_client_message(
            '{"type": "ice_candidate", "target_id": "b", "payload": {"candidate": "c"}}'
        )
        assert isinstance(message, IceCandidateMessage)

    def test_chat_set_muted_kick(self) -> None:
        assert isinstance(parse_client_message('{"type": "chat_send", "text": "hi"}'), ChatSendMessage)
        assert isinstance(parse_client_message('{"type": "set_muted", "muted": true}'), SetMutedMessage)
        assert isinstance(parse_client_message('{"type": "kick", "target_id": "b"}'), KickMessage)

    @pytest.mark.parametrize(
        "raw",
        [
            "not json",
            "[]",
            '{"room_id": "r1"}',
            '{"type": "teleport"}',
            '{"type": "offer"}',
            '{"type": "set_muted", "muted": "sometimes"}',
            # Relay-only messages are not accepted from clients
            '{"type": "you_were_kicked"}',
        ],
    )
    def test_invalid_frames_rejected(self, raw: str) -> None:
        with pytest.raises(ValidationError):
            parse_client_message(raw)


class TestServerMessages:
    """Test serialization of relay frames."""

    def test_join_confirmed_shape(self) -> None:
        message = JoinConfirmedMessage(
            identity="a",
            room_id="r1",
            others=[ParticipantSummary(identity="b", username="bob")],
            is_creator=False,
        )
        data = json.loads(message.model_dump_json())

        assert data == {
            "type": "join_confirmed",
            "identity": "a",
            "room_id": "r1",
            "others": [{"identity": "b", "username": "bob", "media_tag": None, "muted": False}],
            "is_creator": False,
        }

    def test_relayed_offer_uses_from_id(self) -> None:
        data = json.loads(RelayedOfferMessage(from_id="a", payload={"sdp": "x"}).model_dump_json())
        assert data == {"type": "offer", "from_id": "a", "payload": {"sdp": "x"}}

    def test_protocol_error_code(self) -> None:
        data = json.loads(
            ProtocolErrorMessage(message="nope", code=ErrorCode.UNAUTHORIZED).model_dump_json()
        )
        assert data == {"type": "protocol_error", "message": "nope", "code": "UNAUTHORIZED"}

    def test_parse_server_message(self) -> None:
        message = parse_server_message(YouWereKickedMessage().model_dump_json())
        assert isinstance(message, YouWereKickedMessage)

    def test_parse_server_offer_is_relayed_variant(self) -> None:
        message = parse_server_message('{"type": "offer", "from_id": "a", "payload": null}')
        assert isinstance(message, RelayedOfferMessage)
        assert message.from_id == "a"
