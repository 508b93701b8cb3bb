"""Common type definitions shared by the relay and the client.

This package provides the identity, signaling and roster types used on both
sides of the Huddle signaling protocol.
"""

from src.common.types import (
    ConnectionID,
    ParticipantInfo,
    RoomID,
    SignalPayload,
)

__all__ = [
    "ConnectionID",
    "ParticipantInfo",
    "RoomID",
    "SignalPayload",
]
