"""Unit tests for adaptive energy-based voice activity detection."""

import asyncio
from unittest.mock import MagicMock

import numpy as np
import pytest

from src.client.audio_source import AudioTrackSampleSource
from src.client.config import VoiceActivityConfig
from src.client.vad import VoiceActivityDetector, VoiceActivityMonitor
from tests.helpers.relay_test_utils import noise_window, silence_window, tone_window


class ScriptedSource:
    """Sample source that replays a fixed list of windows, then ends."""

    def __init__(self, windows: list[np.ndarray]) -> None:
        self._windows = list(windows)
        self.reads = 0
        self.closed = 0

    async def read_window(self) -> np.ndarray | None:
        self.reads += 1
        if not self._windows:
            return None
        return self._windows.pop(0)

    async def close(self) -> None:
        self.closed += 1


class EndlessSource:
    def __init__(self) -> None:
        self.closed = False

    async def read_window(self) -> np.ndarray | None:
        return silence_window()

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def events() -> list[tuple[str, bool]]:
    return []


@pytest.fixture
def detector(events: list[tuple[str, bool]]) -> VoiceActivityDetector:
    vad = VoiceActivityDetector("peer", VoiceActivityConfig())
    vad.on_speaking_changed = lambda stream_id, speaking: events.append((stream_id, speaking))
    return vad


class TestWindowEnergy:
    def test_silence(self) -> None:
        assert VoiceActivityDetector.window_energy(silence_window()) == 0.0

    def test_full_scale_square(self) -> None:
        assert VoiceActivityDetector.window_energy(np.ones(128)) == pytest.approx(255.0)

    def test_sine_rms(self) -> None:
        # Whole number of periods so the RMS is exactly peak / sqrt(2)
        window = tone_window(0.5, size=2400, frequency_hz=400.0)
        assert VoiceActivityDetector.window_energy(window) == pytest.approx(
            0.5 / np.sqrt(2) * 255, rel=1e-3
        )

    def test_empty_window(self) -> None:
        assert VoiceActivityDetector.window_energy(np.array([])) == 0.0


class TestDetector:
    def test_silence_is_not_speech(self, detector: VoiceActivityDetector, events: list) -> None:
        for _ in range(20):
            assert detector.process_window(silence_window()) is False
        assert events == []

    def test_quiet_noise_below_floor(self, detector: VoiceActivityDetector) -> None:
        # RMS of uniform noise at 0.01 is ~1.5 on the 0-255 scale, under the floor of 5
        for seed in range(10):
            assert detector.process_window(noise_window(0.01, seed=seed)) is False

    def test_onset_after_silence(self, detector: VoiceActivityDetector, events: list) -> None:
        for _ in range(10):
            detector.process_window(silence_window())

        assert detector.process_window(tone_window(0.5)) is True
        assert events == [("peer", True)]

    def test_steady_tone_not_speech(self, detector: VoiceActivityDetector) -> None:
        """A constant level never exceeds 1.5x its own mean."""
        for _ in range(30):
            assert detector.process_window(tone_window(0.5)) is False

    def test_callback_only_on_edges(self, detector: VoiceActivityDetector, events: list) -> None:
        for _ in range(10):
            detector.process_window(silence_window())
        for _ in range(40):
            detector.process_window(tone_window(0.5))
        for _ in range(10):
            detector.process_window(silence_window())

        assert events == [("peer", True), ("peer", False)]

    def test_muted_always_silent(self, detector: VoiceActivityDetector, events: list) -> None:
        for _ in range(10):
            detector.process_window(silence_window())
        detector.process_window(tone_window(0.5))
        assert detector.is_speaking

        detector.muted = True
        assert detector.is_speaking is False
        assert detector.process_window(tone_window(0.9)) is False
        assert events == [("peer", True), ("peer", False)]

    def test_level_percent(self, detector: VoiceActivityDetector) -> None:
        detector.process_window(silence_window())
        assert detector.level_percent == 0.0

        detector.process_window(tone_window(0.1))
        detector.process_window(tone_window(0.5))
        assert detector.level_percent == pytest.approx(100.0)

        for seed in range(20):
            detector.process_window(noise_window(0.3, seed=seed))
            assert 0.0 <= detector.level_percent <= 100.0

    def test_history_lengths(self) -> None:
        config = VoiceActivityConfig()
        local = VoiceActivityDetector("local", config, local=True)
        remote = VoiceActivityDetector("peer", config)

        for _ in range(150):
            local.process_window(silence_window())
            remote.process_window(silence_window())

        assert len(local._history) == 100
        assert len(remote._history) == 50

    def test_reset(self, detector: VoiceActivityDetector, events: list) -> None:
        for _ in range(10):
            detector.process_window(silence_window())
        detector.process_window(tone_window(0.5))

        detector.reset()

        assert detector.is_speaking is False
        assert detector.level_percent == 0.0
        assert detector.stats["max_energy"] == 0.0
        assert events[-1] == ("peer", False)


class TestMonitor:
    @pytest.mark.asyncio
    async def test_stream_runs_until_source_ends(self) -> None:
        events: list[tuple[str, bool]] = []
        monitor = VoiceActivityMonitor(
            VoiceActivityConfig(tick_rate_hz=240),
            on_speaking_changed=lambda stream_id, speaking: events.append((stream_id, speaking)),
        )
        windows = [silence_window()] * 10 + [tone_window(0.5)] * 3
        source = ScriptedSource(windows)

        monitor.attach("peer", source)
        await asyncio.wait_for(monitor._tasks["peer"], timeout=5)

        # Speaking on the tone, then reset to silent when the source ended
        assert events == [("peer", True), ("peer", False)]
        assert source.reads == len(windows) + 1
        assert source.closed >= 1

        await monitor.close()
        assert monitor.stream_ids == []

    @pytest.mark.asyncio
    async def test_attach_idempotent(self) -> None:
        monitor = VoiceActivityMonitor()

        first = monitor.attach("peer", EndlessSource())
        second = monitor.attach("peer", EndlessSource())

        assert first is second
        assert monitor.stream_ids == ["peer"]
        await monitor.close()

    @pytest.mark.asyncio
    async def test_detach_idempotent(self) -> None:
        monitor = VoiceActivityMonitor()
        monitor.attach("local", EndlessSource(), local=True)
        assert monitor.get_detector("local").local is True

        await monitor.detach("local")
        await monitor.detach("local")
        await monitor.detach("unknown")

        assert monitor.get_detector("local") is None
        assert monitor.stream_ids == []

    @pytest.mark.asyncio
    async def test_detach_closes_source(self) -> None:
        source = EndlessSource()
        monitor = VoiceActivityMonitor()
        monitor.attach("peer", source)

        await monitor.detach("peer")

        assert source.closed is True

    @pytest.mark.asyncio
    async def test_detach_stops_track_reader(self) -> None:
        """Detaching a remote stream leaves no reader task behind."""
        track = MagicMock()
        track.kind = "audio"
        track.id = "remote-audio"
        frame = MagicMock()
        frame.to_ndarray.return_value = np.zeros((1, 960), dtype=np.int16)

        async def recv() -> MagicMock:
            await asyncio.sleep(0.001)
            return frame

        track.recv = recv
        source = AudioTrackSampleSource(track)
        monitor = VoiceActivityMonitor(VoiceActivityConfig(tick_rate_hz=240))
        monitor.attach("bob", source)

        # Let the loop start the reader
        for _ in range(5):
            await asyncio.sleep(0.005)
        reader = source._reader
        assert reader is not None and not reader.done()

        await monitor.detach("bob")

        assert reader.done()
        assert source.ended
