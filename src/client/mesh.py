"""Full-mesh peer link orchestration.

Each participant keeps one direct media link to every other participant in
the room. The participant that joins later always initiates: after
``join_confirmed`` it offers to everyone already present, and existing members
only ever answer. That gives exactly one initiator per pair and N*(N-1)/2
links for N participants.

Handshake messages travel through the relay. ICE candidates can overtake the
offer or answer they belong to, so candidates are buffered until the link's
remote description is set and replayed afterwards.

Link States:
- NEW: link created, nothing exchanged yet
- NEGOTIATING: initiator sent its offer, or responder applied an offer and answered
- CONNECTED: substrate reports connected, or remote media arrived
- CLOSED: torn down (terminal, reachable from any state)
"""

import logging
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeAlias

from src.common.types import ConnectionID, SignalPayload
from src.relay.protocol import ParticipantSummary

logger = logging.getLogger(__name__)

DEFAULT_MAX_PENDING_CANDIDATES = 64


class LinkState(Enum):
    """Peer link lifecycle states."""

    NEW = "new"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


VALID_TRANSITIONS: dict[LinkState, set[LinkState]] = {
    LinkState.NEW: {LinkState.NEGOTIATING, LinkState.CLOSED},
    LinkState.NEGOTIATING: {LinkState.CONNECTED, LinkState.CLOSED},
    LinkState.CONNECTED: {LinkState.CLOSED},
    LinkState.CLOSED: set(),  # Terminal state
}


class PeerConnection(Protocol):
    """Media connection substrate for one link.

    Payloads are the opaque dicts carried by the relay:
    ``{"type": "offer"|"answer", "sdp": str}`` and
    ``{"candidate": str, "sdpMid": str | None, "sdpMLineIndex": int | None}``.
    """

    async def create_offer(self) -> dict[str, Any]: ...

    async def accept_offer(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Apply a remote offer and return the local answer."""
        ...

    async def accept_answer(self, payload: dict[str, Any]) -> None: ...

    async def add_ice_candidate(self, payload: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


@dataclass
class PeerConnectionEvents:
    """Substrate event hooks bound to one remote identity."""

    on_state_change: Callable[[str], Awaitable[None]]
    on_track: Callable[[Any], Awaitable[None]]
    on_ice_candidate: Callable[[dict[str, Any]], Awaitable[None]]


PeerConnectionFactory: TypeAlias = Callable[[ConnectionID, PeerConnectionEvents], PeerConnection]
"""Builds the substrate connection for a new link."""


class SignalingSender(Protocol):
    """Outbound half of the relay connection used by the mesh."""

    async def send_offer(self, target_id: ConnectionID, payload: SignalPayload) -> None: ...

    async def send_answer(self, target_id: ConnectionID, payload: SignalPayload) -> None: ...

    async def send_ice_candidate(self, target_id: ConnectionID, payload: SignalPayload) -> None: ...


@dataclass
class PeerLink:
    """Direct media link to one remote participant."""

    remote_id: ConnectionID
    initiator: bool
    connection: PeerConnection
    state: LinkState = LinkState.NEW
    remote_description_set: bool = False
    awaiting_answer: bool = False
    media_arrived: bool = False
    remote_tracks: list[Any] = field(default_factory=list)
    pending_candidates: list[dict[str, Any]] = field(default_factory=list)

    @property
    def is_established(self) -> bool:
        return self.state == LinkState.CONNECTED

    @property
    def is_closed(self) -> bool:
        return self.state == LinkState.CLOSED

    def transition_state(self, new_state: LinkState) -> None:
        """Transition link to a new state with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid link transition: {self.state.value} → {new_state.value}")

        logger.debug(
            "Link state transition",
            extra={
                "remote_id": self.remote_id,
                "from_state": self.state.value,
                "to_state": new_state.value,
            },
        )
        self.state = new_state


class MeshConnectionOrchestrator:
    """Maintains at most one ``PeerLink`` per remote participant.

    Thread-safety: NOT thread-safe. Use from the client's event loop only.

    Example:
        ```python
        mesh = MeshConnectionOrchestrator(signaling, peer_factory)
        mesh.on_remote_track = handle_track

        # after join_confirmed
        await mesh.connect_to_roster(confirmed.others)

        # relayed handshake messages
        await mesh.handle_offer(msg.from_id, msg.payload)
        ```
    """

    def __init__(
        self,
        signaling: SignalingSender,
        peer_factory: PeerConnectionFactory,
        max_pending_candidates: int = DEFAULT_MAX_PENDING_CANDIDATES,
    ) -> None:
        """Initialize mesh orchestrator.

        Args:
            signaling: Relay connection used to send offers, answers and candidates
            peer_factory: Builds the substrate connection for each new link
            max_pending_candidates: Candidates held per unknown sender
        """
        self._signaling = signaling
        self._peer_factory = peer_factory
        self._max_pending_candidates = max_pending_candidates

        self._links: dict[ConnectionID, PeerLink] = {}
        self._early_candidates: dict[ConnectionID, deque[dict[str, Any]]] = {}
        self.roster: dict[ConnectionID, ParticipantSummary] = {}

        # Event callbacks (set these to receive events)
        self.on_link_connected: Callable[[ConnectionID, PeerLink], Awaitable[None]] | None = None
        self.on_link_closed: Callable[[ConnectionID], Awaitable[None]] | None = None
        self.on_remote_track: Callable[[ConnectionID, Any], Awaitable[None]] | None = None

    @property
    def links(self) -> dict[ConnectionID, PeerLink]:
        return dict(self._links)

    def get_link(self, remote_id: ConnectionID) -> PeerLink | None:
        return self._links.get(remote_id)

    # ------------------------------------------------------------------
    # Roster
    # ------------------------------------------------------------------

    async def connect_to_roster(self, others: Iterable[ParticipantSummary]) -> None:
        """Offer to every participant already in the room."""
        for participant in others:
            self.roster[participant.identity] = participant
            link = self._create_link(participant.identity, initiator=True)
            if link.state != LinkState.NEW:
                continue
            await self._guard(link, self._send_offer(link, renegotiation=False))

    def note_participant_joined(self, participant: ParticipantSummary) -> None:
        """Record a newcomer. The newcomer sends the offer, so no link is created."""
        self.roster[participant.identity] = participant

    def note_participant_muted(self, identity: ConnectionID, muted: bool) -> None:
        participant = self.roster.get(identity)
        if participant is not None:
            participant.muted = muted

    async def handle_participant_left(self, identity: ConnectionID) -> None:
        """Drop everything held for a departed participant."""
        self.roster.pop(identity, None)
        self._early_candidates.pop(identity, None)
        await self.remove_link(identity)

    # ------------------------------------------------------------------
    # Relayed handshake messages
    # ------------------------------------------------------------------

    async def handle_offer(self, from_id: ConnectionID, payload: SignalPayload) -> None:
        """Answer an offer, creating a responder link for a new sender."""
        if not isinstance(payload, dict):
            logger.warning("Ignoring malformed offer", extra={"from_id": from_id})
            return

        link = self._links.get(from_id)
        if link is not None:
            if payload.get("renegotiation") and link.is_established:
                await self._guard(link, self._answer(link, payload))
                return

            logger.warning(
                "Ignoring offer for existing link",
                extra={"from_id": from_id, "state": link.state.value, "initiator": link.initiator},
            )
            return

        link = self._create_link(from_id, initiator=False)
        for candidate in self._early_candidates.pop(from_id, ()):
            link.pending_candidates.append(candidate)

        await self._guard(link, self._answer(link, payload))

    async def handle_answer(self, from_id: ConnectionID, payload: SignalPayload) -> None:
        """Apply an answer to the initiator link awaiting it."""
        link = self._links.get(from_id)
        if link is None or not link.awaiting_answer or not isinstance(payload, dict):
            logger.debug("Dropping unexpected answer", extra={"from_id": from_id})
            return

        await self._guard(link, self._apply_answer(link, payload))

    async def handle_ice_candidate(self, from_id: ConnectionID, payload: SignalPayload) -> None:
        """Apply a candidate now, or hold it until the remote description is set."""
        if not isinstance(payload, dict) or not payload.get("candidate"):
            logger.debug("Ignoring empty ICE candidate", extra={"from_id": from_id})
            return

        link = self._links.get(from_id)
        if link is None:
            pending = self._early_candidates.setdefault(
                from_id, deque(maxlen=self._max_pending_candidates)
            )
            pending.append(payload)
            logger.debug(
                "Buffered ICE candidate for unknown sender",
                extra={"from_id": from_id, "pending": len(pending)},
            )
            return

        if link.is_closed:
            return

        if not link.remote_description_set:
            link.pending_candidates.append(payload)
            return

        await self._guard(link, link.connection.add_ice_candidate(payload))

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def renegotiate(self, remote_id: ConnectionID | None = None) -> int:
        """Send a fresh offer on one or all established links.

        Returns:
            Number of links re-signaled
        """
        if remote_id is not None:
            targets = [link for link in (self._links.get(remote_id),) if link is not None]
        else:
            targets = list(self._links.values())

        count = 0
        for link in targets:
            if not link.is_established:
                continue
            await self._guard(link, self._send_offer(link, renegotiation=True))
            count += 1
        return count

    async def remove_link(self, remote_id: ConnectionID) -> None:
        """Close and forget one link. Unknown or already closed links are ignored."""
        link = self._links.pop(remote_id, None)
        if link is None or link.is_closed:
            return

        link.transition_state(LinkState.CLOSED)
        link.pending_candidates.clear()
        try:
            await link.connection.close()
        except Exception as e:
            logger.warning(
                "Error closing peer connection",
                extra={"remote_id": remote_id, "error": str(e)},
            )

        logger.info("Peer link closed", extra={"remote_id": remote_id, "links": len(self._links)})
        if self.on_link_closed is not None:
            await self.on_link_closed(remote_id)

    async def close_all(self) -> None:
        """Tear down every link. Safe to call more than once."""
        self._early_candidates.clear()
        for remote_id in list(self._links):
            await self.remove_link(remote_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_link(self, remote_id: ConnectionID, initiator: bool) -> PeerLink:
        existing = self._links.get(remote_id)
        if existing is not None:
            return existing

        events = PeerConnectionEvents(
            on_state_change=lambda state: self._on_state_change(remote_id, state),
            on_track=lambda track: self._on_track(remote_id, track),
            on_ice_candidate=lambda candidate: self._on_local_candidate(remote_id, candidate),
        )
        link = PeerLink(
            remote_id=remote_id,
            initiator=initiator,
            connection=self._peer_factory(remote_id, events),
        )
        self._links[remote_id] = link

        logger.info(
            "Peer link created",
            extra={"remote_id": remote_id, "initiator": initiator, "links": len(self._links)},
        )
        return link

    async def _send_offer(self, link: PeerLink, renegotiation: bool) -> None:
        offer = await link.connection.create_offer()
        if link.is_closed:
            return

        link.awaiting_answer = True
        if link.state == LinkState.NEW:
            link.transition_state(LinkState.NEGOTIATING)
        await self._signaling.send_offer(link.remote_id, {**offer, "renegotiation": renegotiation})

    async def _answer(self, link: PeerLink, offer: dict[str, Any]) -> None:
        answer = await link.connection.accept_offer(offer)
        if link.is_closed:
            return

        link.remote_description_set = True
        await self._flush_candidates(link)
        await self._signaling.send_answer(link.remote_id, answer)

        if link.state == LinkState.NEW:
            link.transition_state(LinkState.NEGOTIATING)
            if link.media_arrived:
                await self._mark_connected(link)

    async def _apply_answer(self, link: PeerLink, answer: dict[str, Any]) -> None:
        link.awaiting_answer = False
        await link.connection.accept_answer(answer)
        link.remote_description_set = True
        await self._flush_candidates(link)

        if link.media_arrived and link.state == LinkState.NEGOTIATING:
            await self._mark_connected(link)

    async def _flush_candidates(self, link: PeerLink) -> None:
        pending, link.pending_candidates = link.pending_candidates, []
        for candidate in pending:
            await link.connection.add_ice_candidate(candidate)
        if pending:
            logger.debug(
                "Replayed buffered ICE candidates",
                extra={"remote_id": link.remote_id, "count": len(pending)},
            )

    async def _mark_connected(self, link: PeerLink) -> None:
        if link.state != LinkState.NEGOTIATING:
            return

        link.transition_state(LinkState.CONNECTED)
        logger.info("Peer link connected", extra={"remote_id": link.remote_id})
        if self.on_link_connected is not None:
            await self.on_link_connected(link.remote_id, link)

    async def _on_state_change(self, remote_id: ConnectionID, state: str) -> None:
        link = self._links.get(remote_id)
        if link is None or link.is_closed:
            return

        if state == "connected":
            await self._mark_connected(link)
        elif state in ("failed", "closed"):
            logger.warning(
                "Peer connection lost",
                extra={"remote_id": remote_id, "connection_state": state},
            )
            await self.remove_link(remote_id)

    async def _on_track(self, remote_id: ConnectionID, track: Any) -> None:
        link = self._links.get(remote_id)
        if link is None or link.is_closed:
            return

        link.media_arrived = True
        link.remote_tracks.append(track)
        if self.on_remote_track is not None:
            await self.on_remote_track(remote_id, track)
        await self._mark_connected(link)

    async def _on_local_candidate(self, remote_id: ConnectionID, candidate: dict[str, Any]) -> None:
        link = self._links.get(remote_id)
        if link is None or link.is_closed:
            return
        await self._signaling.send_ice_candidate(remote_id, candidate)

    async def _guard(self, link: PeerLink, step: Awaitable[None]) -> None:
        """Run one handshake step, tearing down only this link on failure."""
        try:
            await step
        except Exception as e:
            logger.error(
                "Peer link error, tearing down link",
                extra={"remote_id": link.remote_id, "error": str(e)},
                exc_info=True,
            )
            await self.remove_link(link.remote_id)
