"""Common type aliases for the Huddle relay and client.

These aliases name the domain concepts that cross the wire between the relay
and its clients, so both sides agree on what an identifier or a roster entry
looks like.

The type system distinguishes between:
- Identity types: connection identities and room identifiers
- Signaling types: opaque handshake payloads relayed between peers
- Roster types: participant summaries sent to joining clients

Example:
    >>> from src.common.types import ParticipantInfo
    >>> entry: ParticipantInfo = {
    ...     "identity": "ws-3f2a9c",
    ...     "username": "alice",
    ...     "media_tag": "peer-1",
    ...     "muted": False,
    ... }
"""

from typing import Any, TypeAlias, TypedDict

# Identity types
ConnectionID: TypeAlias = str
"""Identity of one live relay connection.

Assigned by the transport when a client connects and reused as the relay
address for offers, answers and ICE candidates. Never reused across
connections.
"""

RoomID: TypeAlias = str
"""Opaque room identifier.

Rooms created through the relay use UUID4 strings. Possession of the
identifier is the only access control, so it must never carry structure.
"""

# Signaling types
SignalPayload: TypeAlias = Any
"""Handshake payload relayed verbatim between peers.

The relay never inspects it. Clients exchange session descriptions
(``{"type": "offer", "sdp": ...}``) and ICE candidates
(``{"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}``).
"""


# Roster types
class ParticipantInfo(TypedDict):
    """Roster entry describing one room member."""

    identity: ConnectionID
    username: str
    media_tag: str | None
    muted: bool
