"""Relay and mesh testing utilities.

Provides:
- In-memory relay connections that record delivered frames
- A relay harness that connects clients and applies frames synchronously
- Fake peer connections and signaling for mesh tests, standalone or over the harness
- Synthetic audio windows for voice activity tests
"""

import json
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from src.client.mesh import PeerConnectionEvents
from src.relay.events import ConnectionClosed, ConnectionOpened, FrameReceived
from src.relay.relay import SignalingRelay
from src.relay.rooms import RoomRegistry
from src.relay.transport.base import RelayConnection

# ============================================================================
# Relay side
# ============================================================================


class FakeConnection(RelayConnection):
    """Relay connection that keeps every enqueued frame in memory."""

    def __init__(self, connection_id: str, capacity: int | None = None) -> None:
        self._connection_id = connection_id
        self._connected = True
        self._capacity = capacity
        self.frames: list[str] = []

    @property
    def connection_id(self) -> str:
        return self._connection_id

    @property
    def is_connected(self) -> bool:
        return self._connected

    def enqueue(self, frame: str) -> bool:
        if not self._connected:
            return False
        if self._capacity is not None and len(self.frames) >= self._capacity:
            return False
        self.frames.append(frame)
        return True

    async def close(self) -> None:
        self._connected = False

    @property
    def messages(self) -> list[dict[str, Any]]:
        return [json.loads(frame) for frame in self.frames]

    def of_type(self, message_type: str) -> list[dict[str, Any]]:
        return [m for m in self.messages if m["type"] == message_type]

    def clear(self) -> None:
        self.frames.clear()


class RelayHarness:
    """Drives a ``SignalingRelay`` synchronously through ``apply``."""

    def __init__(self) -> None:
        self.registry = RoomRegistry()
        self.relay = SignalingRelay(self.registry)
        self.connections: dict[str, FakeConnection] = {}

    def connect(self, connection_id: str) -> FakeConnection:
        connection = FakeConnection(connection_id)
        self.connections[connection_id] = connection
        self.relay.apply(ConnectionOpened(connection))
        return connection

    def send(self, connection_id: str, message: dict[str, Any] | str) -> None:
        raw = message if isinstance(message, str) else json.dumps(message)
        self.relay.apply(FrameReceived(connection_id, raw))

    def disconnect(self, connection_id: str) -> None:
        connection = self.connections[connection_id]
        connection._connected = False
        self.relay.apply(ConnectionClosed(connection_id))

    def join(self, connection_id: str, room_id: str, username: str = "user") -> FakeConnection:
        connection = self.connections.get(connection_id) or self.connect(connection_id)
        self.send(connection_id, {"type": "join", "room_id": room_id, "username": username})
        return connection


# ============================================================================
# Mesh side
# ============================================================================


class FakePeerConnection:
    """Peer connection that records calls and returns canned SDP."""

    def __init__(self, remote_id: str, events: PeerConnectionEvents) -> None:
        self.remote_id = remote_id
        self.events = events
        self.calls: list[str] = []
        self.applied_candidates: list[dict[str, Any]] = []
        self.remote_description: dict[str, Any] | None = None
        self.closed = False
        self.fail_on: str | None = None

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if self.fail_on == name:
            raise RuntimeError(f"{name} failed")

    async def create_offer(self) -> dict[str, Any]:
        self._record("create_offer")
        return {"type": "offer", "sdp": f"offer-to-{self.remote_id}"}

    async def accept_offer(self, payload: dict[str, Any]) -> dict[str, Any]:
        self._record("accept_offer")
        self.remote_description = payload
        return {"type": "answer", "sdp": f"answer-to-{self.remote_id}"}

    async def accept_answer(self, payload: dict[str, Any]) -> None:
        self._record("accept_answer")
        self.remote_description = payload

    async def add_ice_candidate(self, payload: dict[str, Any]) -> None:
        self._record("add_ice_candidate")
        # Candidates must never be applied before the remote description
        assert self.remote_description is not None
        self.applied_candidates.append(payload)

    async def close(self) -> None:
        self._record("close")
        self.closed = True


@dataclass
class FakePeerFactory:
    """Peer factory that keeps every connection it builds."""

    created: dict[str, FakePeerConnection] = field(default_factory=dict)

    def __call__(self, remote_id: str, events: PeerConnectionEvents) -> FakePeerConnection:
        connection = FakePeerConnection(remote_id, events)
        self.created[remote_id] = connection
        return connection


class RecordingSignaling:
    """Signaling sender that records outbound handshake messages."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, Any]] = []

    async def send_offer(self, target_id: str, payload: Any) -> None:
        self.sent.append(("offer", target_id, payload))

    async def send_answer(self, target_id: str, payload: Any) -> None:
        self.sent.append(("answer", target_id, payload))

    async def send_ice_candidate(self, target_id: str, payload: Any) -> None:
        self.sent.append(("ice_candidate", target_id, payload))

    def of_type(self, message_type: str) -> list[tuple[str, Any]]:
        return [(target, payload) for kind, target, payload in self.sent if kind == message_type]


class HarnessSignaling:
    """Signaling sender that feeds handshake messages into a ``RelayHarness``."""

    def __init__(self, harness: RelayHarness, connection_id: str) -> None:
        self._harness = harness
        self._connection_id = connection_id

    async def _send(self, message_type: str, target_id: str, payload: Any) -> None:
        self._harness.send(
            self._connection_id, {"type": message_type, "target_id": target_id, "payload": payload}
        )

    async def send_offer(self, target_id: str, payload: Any) -> None:
        await self._send("offer", target_id, payload)

    async def send_answer(self, target_id: str, payload: Any) -> None:
        await self._send("answer", target_id, payload)

    async def send_ice_candidate(self, target_id: str, payload: Any) -> None:
        await self._send("ice_candidate", target_id, payload)


def make_candidate(index: int = 0) -> dict[str, Any]:
    return {
        "candidate": f"candidate:{index} 1 udp 2122260223 192.0.2.{index + 1} 5000{index} typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    }


# ============================================================================
# Synthetic audio
# ============================================================================


def silence_window(size: int = 2048) -> np.ndarray:
    return np.zeros(size, dtype=np.float64)


def tone_window(amplitude: float, size: int = 2048, frequency_hz: float = 440.0) -> np.ndarray:
    """Sine window at 48kHz with the given peak amplitude in [0, 1]."""
    t = np.arange(size) / 48000.0
    return amplitude * np.sin(2 * np.pi * frequency_hz * t)


def noise_window(amplitude: float, size: int = 2048, seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform(-amplitude, amplitude, size)
