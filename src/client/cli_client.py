"""Command-line Huddle client.

Joins a room through the relay, builds the peer mesh with aiortc, monitors
voice activity for every stream, and turns stdin into chat and commands.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

import aiohttp
from aiortc.mediastreams import MediaStreamTrack

from src.client.audio_source import MAX_GAIN, MIN_GAIN, AudioTrackSampleSource, LocalAudio
from src.client.config import ClientConfig
from src.client.mesh import MeshConnectionOrchestrator, PeerLink
from src.client.peer_connection import aiortc_peer_factory
from src.client.signaling_client import SignalingClient
from src.client.video_source import LocalCamera
from src.client.vad import VoiceActivityMonitor
from src.common.types import ConnectionID, RoomID
from src.relay.protocol import (
    ChatReceivedMessage,
    JoinConfirmedMessage,
    ParticipantJoinedMessage,
    ParticipantKickedMessage,
    ParticipantLeftMessage,
    ParticipantMutedMessage,
    ParticipantSummary,
    ProtocolErrorMessage,
    RelayedAnswerMessage,
    RelayedIceCandidateMessage,
    RelayedOfferMessage,
    ServerMessage,
    YouWereKickedMessage,
)

logger = logging.getLogger(__name__)

LOCAL_STREAM_ID = "local"

HELP_TEXT = """
Commands:
  /mute          - Mute your microphone
  /unmute        - Unmute your microphone
  /gain <x>      - Set microphone gain (0 to 3, default 1)
  /camera        - Turn your camera on or off
  /kick <id>     - Remove a participant (room creator only)
  /who           - List participants
  /renegotiate   - Re-signal every established peer link
  /quit          - Leave the room
  /help          - Show this help
Anything else is sent as chat.
"""


def api_url_for(server_url: str, port_offset: int = 1) -> str:
    """Derive the relay's HTTP endpoint from its WebSocket URL.

    ``ws://host:8080`` becomes ``http://host:8081``.
    """
    parts = urlsplit(server_url)
    scheme = "https" if parts.scheme == "wss" else "http"
    port = (parts.port or (443 if scheme == "https" else 80)) + port_offset
    return urlunsplit((scheme, f"{parts.hostname}:{port}", "", "", ""))


async def request_room_id(api_url: str) -> RoomID:
    """Ask the relay for a fresh room identifier.

    Raises:
        aiohttp.ClientError: If the request fails
    """
    async with aiohttp.ClientSession() as session:
        async with session.post(f"{api_url}/rooms") as response:
            response.raise_for_status()
            data = await response.json()
            return str(data["room_id"])


class HuddleClient:
    """One participant: relay connection, peer mesh and voice activity."""

    def __init__(
        self,
        config: ClientConfig,
        room_id: RoomID,
        username: str,
        local_audio: LocalAudio | None = None,
        signaling: SignalingClient | None = None,
        local_camera: LocalCamera | None = None,
    ) -> None:
        """Initialize client.

        Args:
            config: Client configuration
            room_id: Room to join
            username: Requested display name
            local_audio: Local capture (receive-only when omitted)
            signaling: Relay connection (created from config when omitted)
            local_camera: Local camera (audio only when omitted)
        """
        self.config = config
        self.room_id = room_id
        self.username = username
        self.local_audio = local_audio or LocalAudio(None)
        self.local_camera = local_camera or LocalCamera(None)
        self.signaling = signaling or SignalingClient(config.server_url)

        self.identity: ConnectionID | None = None
        self.is_creator = False
        self.muted = False
        self.running = True

        self.mesh = MeshConnectionOrchestrator(
            self.signaling,
            aiortc_peer_factory(
                ice_servers=config.ice_servers,
                local_tracks=self._tracks_for_link,
            ),
        )
        self.mesh.on_remote_track = self._on_remote_track
        self.mesh.on_link_connected = self._on_link_connected
        self.mesh.on_link_closed = self._on_link_closed

        self.monitor = VoiceActivityMonitor(config.vad, on_speaking_changed=self._on_speaking_changed)

    # ------------------------------------------------------------------
    # Relay messages
    # ------------------------------------------------------------------

    async def handle_message(self, message: ServerMessage) -> None:
        """Apply one relay message."""
        match message:
            case JoinConfirmedMessage():
                self.identity = message.identity
                self.is_creator = message.is_creator
                role = " (creator)" if message.is_creator else ""
                print(f"\nJoined room {message.room_id} as {message.identity}{role}")
                print(f"{len(message.others)} other participant(s) present")
                await self.mesh.connect_to_roster(message.others)

            case ParticipantJoinedMessage():
                self.mesh.note_participant_joined(
                    ParticipantSummary(
                        identity=message.identity,
                        username=message.username,
                        media_tag=message.media_tag,
                    )
                )
                print(f"\n* {message.username} joined")

            case RelayedOfferMessage():
                await self.mesh.handle_offer(message.from_id, message.payload)

            case RelayedAnswerMessage():
                await self.mesh.handle_answer(message.from_id, message.payload)

            case RelayedIceCandidateMessage():
                await self.mesh.handle_ice_candidate(message.from_id, message.payload)

            case ChatReceivedMessage():
                print(f"\n[{message.username}] {message.text}")

            case ParticipantMutedMessage():
                self.mesh.note_participant_muted(message.identity, message.muted)
                state = "muted" if message.muted else "unmuted"
                print(f"\n* {self._display_name(message.identity)} {state}")

            case ParticipantLeftMessage():
                print(f"\n* {self._display_name(message.identity)} left")
                await self.mesh.handle_participant_left(message.identity)

            case ParticipantKickedMessage():
                print(f"\n* {self._display_name(message.identity)} was kicked")
                await self.mesh.handle_participant_left(message.identity)

            case YouWereKickedMessage():
                print("\nYou were removed from the room")
                self.running = False
                await self.mesh.close_all()

            case ProtocolErrorMessage():
                logger.error(f"Relay error [{message.code}]: {message.message}")
                print(f"\nError: {message.message}")

    async def receive_messages(self) -> None:
        try:
            async for message in self.signaling.messages():
                await self.handle_message(message)
                if not self.running:
                    break
        finally:
            self.running = False

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def handle_input(self, text: str) -> None:
        """Apply one line of user input (a command or chat text)."""
        text = text.strip()
        if not text:
            return

        if not text.startswith("/"):
            await self.signaling.send_chat(text)
            return

        command, _, argument = text[1:].partition(" ")
        command = command.lower()
        argument = argument.strip()

        if command == "quit":
            self.running = False
        elif command == "help":
            print(HELP_TEXT)
        elif command in ("mute", "unmute"):
            await self.set_muted(command == "mute")
        elif command == "gain":
            self.set_gain(argument)
        elif command == "camera":
            await self.toggle_camera()
        elif command == "kick":
            if not argument:
                print("Usage: /kick <participant id>")
            else:
                await self.signaling.kick(argument)
        elif command == "who":
            self.print_roster()
        elif command == "renegotiate":
            count = await self.mesh.renegotiate()
            print(f"Renegotiating {count} link(s)")
        else:
            print(f"Unknown command: {command}")
            print("Type /help for available commands")

    async def set_muted(self, muted: bool) -> None:
        """Mute or unmute locally and tell the room."""
        self.muted = muted
        self.local_audio.muted = muted
        detector = self.monitor.get_detector(LOCAL_STREAM_ID)
        if detector is not None:
            detector.muted = muted
        await self.signaling.set_muted(muted)
        print("Muted" if muted else "Unmuted")

    def set_gain(self, argument: str) -> None:
        try:
            self.local_audio.gain = float(argument)
        except ValueError:
            print(f"Usage: /gain <value between {MIN_GAIN:g} and {MAX_GAIN:g}>")
            return
        print(f"Microphone gain set to {self.local_audio.gain:g}")

    async def toggle_camera(self) -> None:
        """Turn the camera on or off and re-signal every established link."""
        if not self.local_camera.available:
            print("No camera configured (start with --video-input)")
            return

        enabled = self.local_camera.toggle()
        count = await self.mesh.renegotiate()
        print(f"Camera {'on' if enabled else 'off'}, renegotiating {count} link(s)")

    def print_roster(self) -> None:
        print(f"\nYou: {self.username} ({self.identity}){' [creator]' if self.is_creator else ''}")
        for identity, participant in self.mesh.roster.items():
            link = self.mesh.get_link(identity)
            link_state = link.state.value if link is not None else "none"
            muted = " [muted]" if participant.muted else ""
            print(f"  {participant.username} ({identity}) link={link_state}{muted}")

    async def input_loop(self) -> None:
        """Read commands and chat from stdin."""
        print(HELP_TEXT)
        loop = asyncio.get_running_loop()

        while self.running:
            try:
                text = await loop.run_in_executor(None, input, "")
            except EOFError:
                # Handle Ctrl+D
                self.running = False
                break

            try:
                await self.handle_input(text)
            except ConnectionError as e:
                logger.error(f"Relay connection lost: {e}")
                self.running = False

    # ------------------------------------------------------------------
    # Mesh and voice activity callbacks
    # ------------------------------------------------------------------

    async def _on_remote_track(self, remote_id: ConnectionID, track: object) -> None:
        source = AudioTrackSampleSource(track, self.config.vad.window_size)  # type: ignore[arg-type]
        self.monitor.attach(remote_id, source)

    async def _on_link_connected(self, remote_id: ConnectionID, link: PeerLink) -> None:
        role = "initiator" if link.initiator else "responder"
        print(f"\n* Connected to {self._display_name(remote_id)} ({role})")

    async def _on_link_closed(self, remote_id: ConnectionID) -> None:
        await self.monitor.detach(remote_id)

    def _tracks_for_link(self) -> list[MediaStreamTrack]:
        return self.local_audio.tracks_for_link() + self.local_camera.tracks_for_link()

    def _on_speaking_changed(self, stream_id: str, speaking: bool) -> None:
        if stream_id == LOCAL_STREAM_ID:
            name = "You"
        else:
            name = self._display_name(stream_id)
        logger.debug(f"{name} {'started' if speaking else 'stopped'} speaking")
        if speaking:
            print(f"\n~ {name} speaking")

    def _display_name(self, identity: ConnectionID) -> str:
        participant = self.mesh.roster.get(identity)
        return participant.username if participant is not None else identity

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Join the room and run until /quit, a kick or disconnect."""
        await self.signaling.connect()

        local_source = self.local_audio.sample_source(self.config.vad.window_size)
        if local_source is not None:
            self.monitor.attach(LOCAL_STREAM_ID, local_source, local=True)

        def signal_handler() -> None:
            self.running = False

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)

        tasks: list[asyncio.Task[None]] = []
        try:
            await self.signaling.join(self.room_id, self.username)

            tasks = [
                asyncio.create_task(self.receive_messages()),
                asyncio.create_task(self.input_loop()),
            ]
            await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            for task in tasks:
                task.cancel()
            await self.shutdown()

    async def shutdown(self) -> None:
        """Leave everything behind. Safe to call more than once."""
        self.running = False
        await self.mesh.close_all()
        await self.monitor.close()
        self.local_audio.stop()
        self.local_camera.stop()
        await self.signaling.close()


async def run_client(args: argparse.Namespace, config: ClientConfig) -> None:
    """Run the CLI client with parsed arguments and loaded configuration."""
    if args.server:
        config = config.model_copy(update={"server_url": args.server})

    room_id = args.room
    if room_id is None:
        room_id = await request_room_id(args.api_url or api_url_for(config.server_url))
        print(f"Created room {room_id}")

    local_audio = LocalAudio(None)
    if args.audio_input:
        local_audio = LocalAudio.open(args.audio_input, format=args.audio_format)

    local_camera = LocalCamera(None)
    if args.video_input:
        local_camera = LocalCamera.open(args.video_input, format=args.video_format)

    client = HuddleClient(
        config, room_id, args.name, local_audio=local_audio, local_camera=local_camera
    )
    await client.run()


def main() -> None:
    """Main entry point for the Huddle CLI client."""
    parser = argparse.ArgumentParser(description="Huddle voice room client")
    parser.add_argument("--config", type=Path, default=None, help="Client config YAML file")
    parser.add_argument("--server", type=str, default=None, help="Relay WebSocket URL")
    parser.add_argument("--api-url", type=str, default=None, help="Relay HTTP URL")
    room = parser.add_mutually_exclusive_group(required=True)
    room.add_argument("--room", type=str, help="Room identifier to join")
    room.add_argument("--new-room", action="store_true", help="Create a new room")
    parser.add_argument("--name", type=str, default="Anonymous", help="Display name")
    parser.add_argument(
        "--audio-input",
        type=str,
        default=None,
        help="Capture device or audio file for MediaPlayer (receive-only when omitted)",
    )
    parser.add_argument(
        "--audio-format",
        type=str,
        default=None,
        help="MediaPlayer input format (e.g., pulse, alsa, avfoundation)",
    )
    parser.add_argument(
        "--video-input",
        type=str,
        default=None,
        help="Camera device or video file for MediaPlayer (enables /camera)",
    )
    parser.add_argument(
        "--video-format",
        type=str,
        default=None,
        help="MediaPlayer camera format (e.g., v4l2, avfoundation)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args()
    config = ClientConfig.from_yaml_with_defaults(args.config)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else config.log_level_value,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        asyncio.run(run_client(args, config))
    except KeyboardInterrupt:
        print("\nExiting...")
        sys.exit(0)


if __name__ == "__main__":
    main()
