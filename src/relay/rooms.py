"""In-memory room registry.

Holds the authoritative mapping of room identifier to Room aggregate for a
single relay process. Nothing is persisted: a room lives exactly as long as it
has at least one participant.

Thread-safety: NOT thread-safe. All mutations are applied by the relay's
single coordinating task (see ``src.relay.relay.SignalingRelay``).
"""

import logging
import time
import uuid
from dataclasses import dataclass, field

from src.common.types import ConnectionID, ParticipantInfo, RoomID

logger = logging.getLogger(__name__)


@dataclass
class Participant:
    """A member of a room, keyed by its connection identity."""

    identity: ConnectionID
    username: str
    media_tag: str | None = None
    muted: bool = False

    def to_info(self) -> ParticipantInfo:
        """Return the roster entry sent to other clients."""
        return {
            "identity": self.identity,
            "username": self.username,
            "media_tag": self.media_tag,
            "muted": self.muted,
        }


@dataclass
class Room:
    """Membership aggregate for one room.

    The creator is fixed at construction and never reassigned, even after the
    creator disconnects.
    """

    room_id: RoomID
    creator_id: ConnectionID
    created_at: float = field(default_factory=time.time)
    _participants: dict[ConnectionID, Participant] = field(
        default_factory=dict, repr=False
    )

    def add_participant(
        self, identity: ConnectionID, username: str, media_tag: str | None = None
    ) -> Participant:
        """Insert a participant, replacing any stale entry for the same identity.

        Args:
            identity: Connection identity of the participant
            username: Already-sanitized display name
            media_tag: Opaque media-session tag supplied by the client

        Returns:
            The newly created participant
        """
        participant = Participant(identity=identity, username=username, media_tag=media_tag)
        self._participants[identity] = participant
        return participant

    def remove_participant(self, identity: ConnectionID) -> Participant | None:
        """Remove a participant by identity.

        Returns:
            The removed participant, or None if it was not a member
        """
        return self._participants.pop(identity, None)

    def get_participant(self, identity: ConnectionID) -> Participant | None:
        return self._participants.get(identity)

    def has_participant(self, identity: ConnectionID) -> bool:
        return identity in self._participants

    def is_creator(self, identity: ConnectionID) -> bool:
        return self.creator_id == identity

    def list_participants(self) -> list[Participant]:
        """Snapshot of all participants in join order.

        Filtering the requester out is the caller's job.
        """
        return list(self._participants.values())

    def member_ids(self) -> list[ConnectionID]:
        return list(self._participants)

    def is_empty(self) -> bool:
        return not self._participants

    def __len__(self) -> int:
        return len(self._participants)


class RoomRegistry:
    """Registry of live rooms for one relay process.

    Constructed explicitly and injected into the relay; starts empty and needs
    no teardown beyond process exit.

    Example:
        ```python
        registry = RoomRegistry()
        room_id = registry.create_identifier()

        room = registry.get_or_create(room_id, "ws-abc")
        room.add_participant("ws-abc", "alice")
        assert room.is_creator("ws-abc")
        ```
    """

    def __init__(self) -> None:
        self._rooms: dict[RoomID, Room] = {}

    @staticmethod
    def create_identifier() -> RoomID:
        """Generate a fresh, unguessable room identifier.

        UUID4 draws 122 random bits from the operating system CSPRNG. The room
        itself is not registered until somebody joins it.
        """
        return str(uuid.uuid4())

    def get_or_create(self, room_id: RoomID, requesting_id: ConnectionID) -> Room:
        """Return the room for ``room_id``, creating it if absent.

        Args:
            room_id: Room identifier
            requesting_id: Connection identity that becomes creator if the
                room does not exist yet

        Returns:
            Existing or newly created room
        """
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(room_id=room_id, creator_id=requesting_id)
            self._rooms[room_id] = room
            logger.info(
                "Room created",
                extra={"room_id": room_id, "creator_id": requesting_id},
            )
        return room

    def get(self, room_id: RoomID) -> Room | None:
        return self._rooms.get(room_id)

    def remove(self, room_id: RoomID) -> None:
        """Discard a room. Removing an unknown room is a no-op."""
        if self._rooms.pop(room_id, None) is not None:
            logger.info("Room removed", extra={"room_id": room_id})

    @property
    def room_count(self) -> int:
        return len(self._rooms)

    def participant_count(self) -> int:
        """Total participants across all rooms."""
        return sum(len(room) for room in self._rooms.values())

    def __len__(self) -> int:
        return len(self._rooms)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms
