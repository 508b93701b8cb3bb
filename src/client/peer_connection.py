"""aiortc implementation of the mesh ``PeerConnection`` substrate.

aiortc gathers all local ICE candidates while setting the local description and
embeds them in the SDP, so this adapter never emits trickled candidates of its
own. Remote candidates (trickled by browser peers) are applied as they arrive.
"""

import logging
from collections.abc import Callable
from typing import Any

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.mediastreams import MediaStreamTrack
from aiortc.sdp import candidate_from_sdp

from src.client.mesh import PeerConnectionEvents, PeerConnectionFactory
from src.common.types import ConnectionID

logger = logging.getLogger(__name__)


def parse_ice_candidate(payload: dict[str, Any]) -> Any:
    """Build an aiortc ``RTCIceCandidate`` from a relayed candidate payload.

    Raises:
        ValueError: If the payload carries no candidate line
    """
    line = payload.get("candidate")
    if not line:
        raise ValueError("ICE candidate payload has no candidate line")

    if line.startswith("candidate:"):
        line = line[len("candidate:") :]

    candidate = candidate_from_sdp(line)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class AiortcPeerConnection:
    """One ``RTCPeerConnection`` wired to mesh event hooks."""

    def __init__(
        self,
        remote_id: ConnectionID,
        events: PeerConnectionEvents,
        ice_servers: list[str] | None = None,
        local_tracks: list[MediaStreamTrack] | None = None,
    ) -> None:
        """Initialize peer connection.

        Args:
            remote_id: Identity of the remote participant (for logging)
            events: Mesh callbacks for state changes and remote tracks
            ice_servers: STUN/TURN URLs
            local_tracks: Local audio tracks to send on this link
        """
        self.remote_id = remote_id
        self._events = events
        self._local_tracks = list(local_tracks or [])
        self._tracks_added = False

        configuration = RTCConfiguration(
            iceServers=[RTCIceServer(urls=url) for url in ice_servers or []]
        )
        self._pc = RTCPeerConnection(configuration=configuration)

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            logger.debug(
                "Connection state changed",
                extra={"remote_id": remote_id, "connection_state": state},
            )
            await self._events.on_state_change(state)

        @self._pc.on("track")
        async def on_track(track: MediaStreamTrack) -> None:
            logger.info("Remote track received", extra={"remote_id": remote_id, "kind": track.kind})
            if track.kind == "audio":
                await self._events.on_track(track)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def _add_local_tracks(self) -> None:
        if self._tracks_added:
            return
        self._tracks_added = True

        if not any(track.kind == "audio" for track in self._local_tracks):
            # Still negotiate an audio section so remote audio can be received
            self._pc.addTransceiver("audio", direction="recvonly")
        for track in self._local_tracks:
            self._pc.addTrack(track)

    async def create_offer(self) -> dict[str, Any]:
        self._add_local_tracks()
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        return {"type": self._pc.localDescription.type, "sdp": self._pc.localDescription.sdp}

    async def accept_offer(self, payload: dict[str, Any]) -> dict[str, Any]:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=payload["sdp"], type="offer")
        )
        if not self._tracks_added:
            # Responder tracks attach to the transceivers created by the offer
            self._tracks_added = True
            for track in self._local_tracks:
                self._pc.addTrack(track)

        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        return {"type": self._pc.localDescription.type, "sdp": self._pc.localDescription.sdp}

    async def accept_answer(self, payload: dict[str, Any]) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=payload["sdp"], type="answer")
        )

    async def add_ice_candidate(self, payload: dict[str, Any]) -> None:
        await self._pc.addIceCandidate(parse_ice_candidate(payload))

    async def close(self) -> None:
        await self._pc.close()
        for track in self._local_tracks:
            track.stop()


def aiortc_peer_factory(
    ice_servers: list[str] | None = None,
    local_tracks: Callable[[], list[MediaStreamTrack]] | None = None,
) -> PeerConnectionFactory:
    """Build a mesh peer factory backed by aiortc.

    Args:
        ice_servers: STUN/TURN URLs for every link
        local_tracks: Called once per link for fresh local track subscriptions
    """

    def factory(remote_id: ConnectionID, events: PeerConnectionEvents) -> AiortcPeerConnection:
        return AiortcPeerConnection(
            remote_id,
            events,
            ice_servers=ice_servers,
            local_tracks=local_tracks() if local_tracks is not None else None,
        )

    return factory
