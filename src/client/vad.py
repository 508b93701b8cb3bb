"""Adaptive energy-based voice activity detection.

Decides per sampling tick whether a participant is speaking, using only the
signal energy of a short window compared against a threshold that adapts to
the stream's own recent history. No speech model is involved.

Key features:
- RMS energy scaled to a 0-255 range
- Adaptive min/max envelope for a level meter
- Threshold at 1.5x the mean of recent energy, never below 5
- Callback fired only when the speaking state flips
- Muted streams are always reported as silent
"""

import asyncio
import logging
from collections import deque
from collections.abc import Callable
from typing import Protocol, TypeAlias

import numpy as np

from src.client.config import VoiceActivityConfig

logger = logging.getLogger(__name__)

ENERGY_SCALE = 255.0
LEVEL_METER_EXPONENT = 0.7

SpeakingCallback: TypeAlias = Callable[[str, bool], None]
"""Called with (stream_id, speaking) on every speaking-state edge."""


class VoiceActivityDetector:
    """Speaking detector for one audio stream.

    Thread-safety: NOT thread-safe. Use from a single task.

    Example:
        ```python
        vad = VoiceActivityDetector("local", VoiceActivityConfig(), local=True)
        vad.on_speaking_changed = lambda stream, speaking: print(stream, speaking)

        for window in windows:  # float arrays in [-1, 1]
            vad.process_window(window)
        ```
    """

    def __init__(
        self,
        stream_id: str,
        config: VoiceActivityConfig | None = None,
        local: bool = False,
    ) -> None:
        """Initialize detector.

        Args:
            stream_id: Identifier reported to the callback (e.g., peer identity)
            config: Detector tuning (defaults used when omitted)
            local: Use the longer local-stream history
        """
        self.stream_id = stream_id
        self._config = config or VoiceActivityConfig()
        self.local = local

        history_length = (
            self._config.local_history_length if local else self._config.remote_history_length
        )
        self._history: deque[float] = deque(maxlen=history_length)

        self._max_energy = 0.0
        self._min_energy = ENERGY_SCALE
        self._is_speaking = False
        self._muted = False
        self._last_energy = 0.0
        self._last_threshold = self._config.threshold_floor
        self._level_percent = 0.0

        self.on_speaking_changed: SpeakingCallback | None = None

    @property
    def is_speaking(self) -> bool:
        return self._is_speaking

    @property
    def level_percent(self) -> float:
        """Level meter value in [0, 100] from the latest window."""
        return self._level_percent

    @property
    def muted(self) -> bool:
        return self._muted

    @muted.setter
    def muted(self, value: bool) -> None:
        self._muted = value
        if value:
            self._set_speaking(False)

    @property
    def stats(self) -> dict[str, float | bool]:
        return {
            "energy": self._last_energy,
            "threshold": self._last_threshold,
            "max_energy": self._max_energy,
            "min_energy": self._min_energy,
            "level_percent": self._level_percent,
            "is_speaking": self._is_speaking,
        }

    @staticmethod
    def window_energy(samples: np.ndarray) -> float:
        """RMS of a window of samples in [-1, 1], scaled to 0-255."""
        if samples.size == 0:
            return 0.0
        samples = samples.astype(np.float64, copy=False)
        return float(np.sqrt(np.mean(samples * samples)) * ENERGY_SCALE)

    def process_window(self, samples: np.ndarray) -> bool:
        """Process one sampling tick.

        Args:
            samples: Window of samples normalized to [-1, 1]

        Returns:
            Speaking state after this tick
        """
        energy = self.window_energy(samples)
        self._last_energy = energy

        self._history.append(energy)

        if energy > self._max_energy:
            self._max_energy = energy
        else:
            self._max_energy *= self._config.envelope_decay

        if 0 < energy < self._min_energy:
            self._min_energy = energy

        energy_range = max(self._max_energy - self._min_energy, self._config.min_range)
        fraction = min(1.0, max(0.0, (energy - self._min_energy) / energy_range))
        self._level_percent = (fraction**LEVEL_METER_EXPONENT) * 100.0

        mean_energy = sum(self._history) / len(self._history)
        threshold = max(
            self._config.threshold_floor, mean_energy * self._config.threshold_multiplier
        )
        self._last_threshold = threshold

        self._set_speaking(energy > threshold and not self._muted)
        return self._is_speaking

    def reset(self) -> None:
        """Clear history and envelope. The speaking state drops to False."""
        self._history.clear()
        self._max_energy = 0.0
        self._min_energy = ENERGY_SCALE
        self._level_percent = 0.0
        self._set_speaking(False)

    def _set_speaking(self, speaking: bool) -> None:
        if speaking == self._is_speaking:
            return

        self._is_speaking = speaking
        logger.debug(
            "Speaking state changed",
            extra={
                "stream_id": self.stream_id,
                "speaking": speaking,
                "energy": round(self._last_energy, 2),
                "threshold": round(self._last_threshold, 2),
            },
        )
        if self.on_speaking_changed is not None:
            self.on_speaking_changed(self.stream_id, speaking)


class SampleSource(Protocol):
    """Something that yields analysis windows for a stream."""

    async def read_window(self) -> np.ndarray | None:
        """Return the latest window in [-1, 1], or None when the stream ended."""
        ...

    async def close(self) -> None:
        """Release the underlying stream. Must be safe to call more than once."""
        ...


class VoiceActivityMonitor:
    """Runs one detector loop per attached stream at a fixed tick rate.

    ``attach``, ``detach`` and ``close`` are all idempotent.
    """

    def __init__(
        self,
        config: VoiceActivityConfig | None = None,
        on_speaking_changed: SpeakingCallback | None = None,
    ) -> None:
        self._config = config or VoiceActivityConfig()
        self._on_speaking_changed = on_speaking_changed
        self._detectors: dict[str, VoiceActivityDetector] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._sources: dict[str, SampleSource] = {}

    @property
    def stream_ids(self) -> list[str]:
        return list(self._detectors)

    def get_detector(self, stream_id: str) -> VoiceActivityDetector | None:
        return self._detectors.get(stream_id)

    def attach(self, stream_id: str, source: SampleSource, local: bool = False) -> VoiceActivityDetector:
        """Start monitoring a stream.

        Attaching a stream id that is already monitored returns the existing
        detector and leaves its loop untouched.
        """
        existing = self._detectors.get(stream_id)
        if existing is not None:
            return existing

        detector = VoiceActivityDetector(stream_id, self._config, local=local)
        detector.on_speaking_changed = self._on_speaking_changed
        self._detectors[stream_id] = detector
        self._sources[stream_id] = source
        self._tasks[stream_id] = asyncio.create_task(
            self._run(detector, source), name=f"vad-{stream_id}"
        )

        logger.info("Voice activity monitoring started", extra={"stream_id": stream_id, "local": local})
        return detector

    async def detach(self, stream_id: str) -> None:
        """Stop monitoring a stream. Unknown ids are ignored."""
        detector = self._detectors.pop(stream_id, None)
        source = self._sources.pop(stream_id, None)
        task = self._tasks.pop(stream_id, None)
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # The loop may be cancelled before it ever ran, so close here as well
        if source is not None:
            await source.close()

        if detector is not None:
            # Report the stream as silent before it disappears
            detector.reset()
            logger.info("Voice activity monitoring stopped", extra={"stream_id": stream_id})

    async def close(self) -> None:
        for stream_id in list(self._detectors):
            await self.detach(stream_id)

    async def _run(self, detector: VoiceActivityDetector, source: SampleSource) -> None:
        interval = 1.0 / self._config.tick_rate_hz
        loop = asyncio.get_running_loop()

        try:
            while True:
                started = loop.time()
                window = await source.read_window()
                if window is None:
                    logger.debug("Sample source ended", extra={"stream_id": detector.stream_id})
                    detector.reset()
                    return

                detector.process_window(window)
                await asyncio.sleep(max(0.0, interval - (loop.time() - started)))
        finally:
            await source.close()
