"""Unit tests for the optional local camera."""

from fractions import Fraction
from unittest.mock import AsyncMock, MagicMock

import av
import numpy as np
import pytest

from src.client.video_source import GatedVideoTrack, LocalCamera, black_frame_like


def make_video_frame(width: int = 64, height: int = 48) -> av.VideoFrame:
    frame = av.VideoFrame.from_ndarray(
        np.full((height, width, 3), 200, dtype=np.uint8), format="rgb24"
    )
    frame.pts = 3000
    frame.time_base = Fraction(1, 90000)
    return frame


def test_black_frame_matches_size() -> None:
    black = black_frame_like(make_video_frame())

    assert (black.width, black.height) == (64, 48)
    assert black.pts == 3000
    assert not black.to_ndarray(format="rgb24").any()


@pytest.mark.asyncio
async def test_gated_track_follows_enabled_flag() -> None:
    source = MagicMock()
    source.recv = AsyncMock(side_effect=lambda: make_video_frame())
    enabled = {"value": False}
    track = GatedVideoTrack(source, lambda: enabled["value"])

    assert track.kind == "video"
    assert not (await track.recv()).to_ndarray(format="rgb24").any()

    enabled["value"] = True
    assert (await track.recv()).to_ndarray(format="rgb24").max() == 200


def test_camera_without_source() -> None:
    camera = LocalCamera(None)

    assert camera.available is False
    assert camera.tracks_for_link() == []
    with pytest.raises(RuntimeError, match="No camera"):
        camera.toggle()
    camera.stop()


def test_camera_toggle() -> None:
    source = MagicMock()
    camera = LocalCamera(source)

    assert camera.enabled is False
    assert camera.toggle() is True
    assert camera.toggle() is False

    camera.stop()
    source.stop.assert_called_once()
    assert camera.available is False
