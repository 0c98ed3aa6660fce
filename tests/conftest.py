import threading

import numpy as np
import pytest

from caption_errors import EncodeError
from caption_renderer import CaptionRenderer
from caption_segments import CaptionSegment, normalize_segments
from capture_graph import (
    MP4_GENERIC,
    MP4_H264_BASELINE,
    MP4_H264_HIGH,
    WEBM_GENERIC,
    WEBM_VP8_OPUS,
    WEBM_VP9_OPUS,
    SourceInfo,
    select_profile,
)

ALL_PROFILES = {
    MP4_H264_HIGH,
    MP4_H264_BASELINE,
    MP4_GENERIC,
    WEBM_VP9_OPUS,
    WEBM_VP8_OPUS,
    WEBM_GENERIC,
}


class FakeGraph:
    """Stands in for CaptureGraph: blank canvases in, frame list out."""

    def __init__(self, source, profile, width, height, fps=10, fail_at=None, gate=None):
        self.source = source
        self.profile = profile
        self.width = width
        self.height = height
        self.fps = fps
        self.fail_at = fail_at
        self.gate = gate
        self.frames = []
        self.closed = False
        self.finished = False

    @property
    def duration(self):
        return self.source.duration

    def read_canvas(self, time):
        if self.gate is not None:
            self.gate.wait(5)
        if time >= self.source.frame_count / self.fps:
            return None
        return np.zeros((self.height, self.width, 3), dtype=np.uint8)

    def write_frame(self, frame):
        if self.fail_at is not None and len(self.frames) == self.fail_at:
            raise EncodeError("Encoder stopped accepting frames: ffmpeg stderr tail")
        self.frames.append(frame)

    def finish(self):
        self.finished = True
        return b"FAKE" + bytes([len(self.frames) % 256])

    def close(self):
        self.closed = True


class FakeBuilder:
    """CaptureGraphBuilder double that never touches ffmpeg."""

    def __init__(
        self,
        duration=1.0,
        frame_count=None,
        fps=10,
        width=64,
        height=36,
        supported=None,
        fail_at=None,
    ):
        self.fps = fps
        self.source = SourceInfo(
            width=width,
            height=height,
            fps=fps,
            frame_count=frame_count if frame_count is not None else int(duration * fps) + fps,
            duration=duration,
            has_audio=False,
        )
        self.supported = ALL_PROFILES if supported is None else set(supported)
        self.fail_at = fail_at
        self.gate = None
        self.graphs = []

    @property
    def build_count(self):
        return len(self.graphs)

    def probe(self, source_path):
        return self.source

    def select_profile(self, export_format):
        return select_profile(export_format, lambda profile: profile in self.supported)

    def build(self, source_path, source, profile, width, height):
        graph = FakeGraph(
            source, profile, width, height, fps=self.fps, fail_at=self.fail_at, gate=self.gate
        )
        self.graphs.append(graph)
        return graph


class SpyRenderer(CaptionRenderer):
    def __init__(self):
        super().__init__()
        self.calls = []

    def render(self, frame, segment, style, view_mode):
        self.calls.append(segment)
        return frame


@pytest.fixture()
def fake_builder():
    return FakeBuilder()


@pytest.fixture()
def spy_renderer():
    return SpyRenderer()


@pytest.fixture()
def source_video(tmp_path):
    """A file on disk so source identity can be fingerprinted."""
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"not really a video")
    return str(path)


@pytest.fixture()
def bilingual_segments():
    return normalize_segments(
        [
            CaptionSegment(0.0, 0.3, "Hello there.", "你好。"),
            CaptionSegment(0.5, 0.8, "How are you?", "你好吗？"),
        ]
    )


@pytest.fixture()
def release_gate():
    """An Event that background fakes block on until the test sets it."""
    gate = threading.Event()
    yield gate
    gate.set()


@pytest.fixture()
def make_builder():
    return FakeBuilder
