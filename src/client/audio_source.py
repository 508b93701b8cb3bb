"""Sample windows from aiortc audio tracks.

``AudioTrackSampleSource`` keeps the most recent ``window_size`` samples of a
track in a rolling buffer, filled by a reader task that consumes frames as
fast as the track produces them. Detector ticks read a snapshot of that
buffer, so tick rate and frame rate are independent.

Outgoing microphone audio passes through ``MutableAudioTrack``, which applies
the current gain (0 while muted) to each frame.
"""

import asyncio
import logging
from collections.abc import Callable
from typing import Any

import av
import numpy as np
from aiortc.contrib.media import MediaPlayer, MediaRelay
from aiortc.mediastreams import MediaStreamError, MediaStreamTrack

logger = logging.getLogger(__name__)

INT16_SCALE = 32768.0

MIN_GAIN = 0.0
MAX_GAIN = 3.0


def frame_to_samples(frame: object) -> np.ndarray:
    """Convert an audio frame to a flat float array in [-1, 1].

    Args:
        frame: ``av.AudioFrame`` (anything with ``to_ndarray()``)

    Returns:
        Interleaved samples as float64
    """
    data = frame.to_ndarray()  # type: ignore[attr-defined]
    samples = np.asarray(data).reshape(-1)
    if np.issubdtype(samples.dtype, np.integer):
        return samples.astype(np.float64) / INT16_SCALE
    return samples.astype(np.float64)


def apply_gain(frame: av.AudioFrame, gain: float) -> av.AudioFrame:
    """Return a copy of ``frame`` with every sample scaled by ``gain``.

    Integer samples are clipped to their type range, float samples to [-1, 1].
    A gain of exactly 1.0 returns the frame unchanged.
    """
    if gain == 1.0:
        return frame

    data = frame.to_ndarray()
    scaled = data.astype(np.float64) * gain
    if np.issubdtype(data.dtype, np.integer):
        info = np.iinfo(data.dtype)
        scaled = np.clip(np.rint(scaled), info.min, info.max)
    else:
        scaled = np.clip(scaled, -1.0, 1.0)

    out = av.AudioFrame.from_ndarray(
        scaled.astype(data.dtype), format=frame.format.name, layout=frame.layout.name
    )
    out.sample_rate = frame.sample_rate
    out.pts = frame.pts
    out.time_base = frame.time_base
    return out


class AudioTrackSampleSource:
    """Rolling sample window over an aiortc audio track."""

    def __init__(self, track: MediaStreamTrack, window_size: int = 2048) -> None:
        """Initialize sample source.

        Args:
            track: Audio track to read (local or remote)
            window_size: Number of most recent samples kept
        """
        if track.kind != "audio":
            raise ValueError(f"Expected an audio track, got {track.kind!r}")

        self._track = track
        self._window = np.zeros(window_size, dtype=np.float64)
        self._ended = False
        self._reader: asyncio.Task[None] | None = None

    @property
    def ended(self) -> bool:
        return self._ended

    def push(self, samples: np.ndarray) -> None:
        """Append samples to the rolling window."""
        size = self._window.size
        if samples.size >= size:
            self._window[:] = samples[-size:]
        else:
            self._window = np.roll(self._window, -samples.size)
            self._window[-samples.size :] = samples

    async def read_window(self) -> np.ndarray | None:
        """Return a snapshot of the latest window, or None once the track ended."""
        if self._reader is None and not self._ended:
            self._reader = asyncio.create_task(self._read_frames(), name="audio-track-reader")

        if self._ended:
            return None
        return self._window.copy()

    async def close(self) -> None:
        """Stop reading the track. Safe to call more than once."""
        self._ended = True
        if self._reader is not None:
            reader, self._reader = self._reader, None
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

    async def _read_frames(self) -> None:
        try:
            while True:
                frame = await self._track.recv()
                self.push(frame_to_samples(frame))
        except MediaStreamError:
            logger.debug("Audio track ended", extra={"track_id": self._track.id})
        finally:
            self._ended = True


class MutableAudioTrack(MediaStreamTrack):
    """Forwards frames from a source track, scaled by the current gain.

    ``gain`` is read on every frame, so changes apply immediately. A gain of 0
    sends silence.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack, gain: Callable[[], float]) -> None:
        super().__init__()
        self._source = source
        self._gain = gain

    async def recv(self) -> Any:
        frame = await self._source.recv()
        return apply_gain(frame, self._gain())

    def stop(self) -> None:
        super().stop()
        self._source.stop()


class LocalAudio:
    """Local capture shared by every peer link and the local detector.

    Each consumer gets its own subscription through ``MediaRelay`` so one
    consumer never steals frames from another.

    Example:
        ```python
        local = LocalAudio.open("default", format="pulse")
        factory = aiortc_peer_factory(local_tracks=local.tracks_for_link)
        monitor.attach("local", local.sample_source(), local=True)
        local.gain = 1.5
        local.muted = True
        ```
    """

    def __init__(self, source: MediaStreamTrack | None) -> None:
        self._source = source
        self._relay = MediaRelay()
        self._gain = 1.0
        self.muted = False

    @classmethod
    def open(cls, file: str, format: str | None = None) -> "LocalAudio":
        """Open a capture device or audio file with aiortc's ``MediaPlayer``."""
        player = MediaPlayer(file, format=format)
        if player.audio is None:
            raise ValueError(f"No audio stream in {file!r}")
        logger.info("Local audio opened", extra={"file": file, "format": format})
        return cls(player.audio)

    @property
    def available(self) -> bool:
        return self._source is not None

    @property
    def gain(self) -> float:
        """Microphone gain applied to outgoing audio, in [0, 3]."""
        return self._gain

    @gain.setter
    def gain(self, value: float) -> None:
        if not MIN_GAIN <= value <= MAX_GAIN:
            raise ValueError(f"Gain must be between {MIN_GAIN} and {MAX_GAIN}, got {value}")
        self._gain = value
        logger.info("Microphone gain changed", extra={"gain": value})

    def effective_gain(self) -> float:
        return 0.0 if self.muted else self._gain

    def tracks_for_link(self) -> list[MediaStreamTrack]:
        if self._source is None:
            return []
        return [MutableAudioTrack(self._relay.subscribe(self._source), self.effective_gain)]

    def sample_source(self, window_size: int = 2048) -> AudioTrackSampleSource | None:
        if self._source is None:
            return None
        return AudioTrackSampleSource(self._relay.subscribe(self._source), window_size)

    def stop(self) -> None:
        if self._source is not None:
            self._source.stop()
            self._source = None
