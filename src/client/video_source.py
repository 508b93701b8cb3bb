"""Optional local camera for peer links.

Every link created while a camera is configured carries one video track.
Turning the camera off keeps the track in place and sends black frames, so
toggling never adds or removes media sections; the client re-signals the
links afterwards.
"""

import logging
from collections.abc import Callable
from typing import Any

import av
import numpy as np
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamTrack

logger = logging.getLogger(__name__)


def black_frame_like(frame: av.VideoFrame) -> av.VideoFrame:
    """Return a black frame with the size and timing of ``frame``."""
    out = av.VideoFrame.from_ndarray(
        np.zeros((frame.height, frame.width, 3), dtype=np.uint8), format="rgb24"
    )
    out.pts = frame.pts
    out.time_base = frame.time_base
    return out


class GatedVideoTrack(MediaStreamTrack):
    """Forwards camera frames while enabled, black frames otherwise."""

    kind = "video"

    def __init__(self, source: MediaStreamTrack, is_enabled: Callable[[], bool]) -> None:
        super().__init__()
        self._source = source
        self._is_enabled = is_enabled

    async def recv(self) -> Any:
        frame = await self._source.recv()
        if self._is_enabled():
            return frame
        return black_frame_like(frame)

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class LocalCamera:
    """Local camera shared by every peer link.

    Starts disabled. ``toggle`` flips it and returns the new state.
    """

    def __init__(self, source: MediaStreamTrack | None) -> None:
        self._source = source
        self._relay = MediaRelay()
        self.enabled = False

    @classmethod
    def open(cls, file: str, format: str | None = None) -> "LocalCamera":
        """Open a capture device or video file with aiortc's ``MediaPlayer``."""
        player = MediaPlayer(file, format=format)
        if player.video is None:
            raise ValueError(f"No video stream in {file!r}")
        logger.info("Local camera opened", extra={"file": file, "format": format})
        return cls(player.video)

    @property
    def available(self) -> bool:
        return self._source is not None

    def toggle(self) -> bool:
        if self._source is None:
            raise RuntimeError("No camera configured")
        self.enabled = not self.enabled
        logger.info("Camera toggled", extra={"enabled": self.enabled})
        return self.enabled

    def tracks_for_link(self) -> list[MediaStreamTrack]:
        if self._source is None:
            return []
        return [GatedVideoTrack(self._relay.subscribe(self._source), lambda: self.enabled)]

    def stop(self) -> None:
        if self._source is not None:
            self._source.stop()
            self._source = None
