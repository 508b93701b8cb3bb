"""HTTP side endpoints for the relay.

Served by aiohttp next to the WebSocket server:

- ``GET /health``: liveness plus room and connection counts
- ``GET /version``: git commit of the running checkout
- ``POST /rooms``: a fresh room identifier for sharing (nothing is registered)

There is deliberately no endpoint that lists rooms.
"""

import logging
import subprocess
import time
from datetime import UTC, datetime
from pathlib import Path

from aiohttp import web

from src.relay.relay import SignalingRelay
from src.relay.rooms import RoomRegistry

logger = logging.getLogger(__name__)

UNKNOWN_COMMIT = "unknown"


def get_git_commit(cwd: Path | None = None) -> str:
    """Return the short git commit hash of the checkout, or ``"unknown"``."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "--short", "HEAD"],  # noqa: S607
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=5,
            check=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.warning("Could not get git commit hash", extra={"error": str(e)})
        return UNKNOWN_COMMIT

    return result.stdout.strip() or UNKNOWN_COMMIT


class HealthCheckHandler:
    """Handlers for the relay's HTTP side endpoints."""

    def __init__(self, relay: SignalingRelay, commit: str | None = None) -> None:
        """Initialize health check handler.

        Args:
            relay: Running signaling relay
            commit: Commit hash to report (resolved from git when omitted)
        """
        self.relay = relay
        self.commit = commit if commit is not None else get_git_commit()
        self.start_time = time.time()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Relay coordinator is running
            503 Service Unavailable: Relay coordinator is stopped

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "rooms": int,
            "participants": int,
            "connections": int
        }
        """
        healthy = self.relay.is_running
        registry = self.relay.registry

        response_data = {
            "status": "healthy" if healthy else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "rooms": registry.room_count,
            "participants": registry.participant_count(),
            "connections": self.relay.connection_count,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})

        return web.json_response(response_data, status=200 if healthy else 503)

    async def version(self, request: web.Request) -> web.Response:
        """Version endpoint: commit hash and current server time."""
        return web.json_response(
            {
                "commit": self.commit,
                "timestamp": datetime.now(UTC).isoformat(),
            }
        )

    async def create_room(self, request: web.Request) -> web.Response:
        """Generate a room identifier for a new shareable room.

        The room comes into existence when its first participant joins.
        """
        room_id = RoomRegistry.create_identifier()
        logger.info("Room identifier issued", extra={"room_id": room_id})
        return web.json_response({"room_id": room_id}, status=201)


def setup_health_routes(
    app: web.Application,
    relay: SignalingRelay,
    commit: str | None = None,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        relay: Running signaling relay
        commit: Commit hash to report (optional)
    """
    handler = HealthCheckHandler(relay, commit=commit)

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/version", handler.version)
    app.router.add_post("/rooms", handler.create_room)

    logger.info("Health endpoints configured: /health, /version, POST /rooms")
