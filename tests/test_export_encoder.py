import shutil
import warnings
from pathlib import Path

import cv2
import numpy as np
import pytest

from caption_errors import CapabilityError, EncodeError, ExportCancelled
from caption_renderer import CaptionRenderer, StyleConfig, ViewMode
from capture_graph import WEBM_VP9_OPUS, CaptureGraphBuilder
from export_cache import ExportCache
import export_encoder
from export_encoder import (
    DecodeFrameClock,
    ExportEncoder,
    ExportJob,
    ExportRequest,
    ExportStatus,
    ProgressTracker,
    RealtimeFrameClock,
    format_eta,
)


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.now += seconds


def _request(source, segments, view_mode=ViewMode.DUAL, export_format="mp4"):
    return ExportRequest(
        source_path=source,
        segments=segments,
        style=StyleConfig(),
        view_mode=view_mode,
        format=export_format,
    )


def _encoder(builder, renderer, cache=None, **kwargs):
    kwargs.setdefault("end_epsilon", 0.05)
    return ExportEncoder(builder, renderer, cache=cache, **kwargs)


def test_completed_export_goes_through_every_state(
    fake_builder, spy_renderer, source_video, bilingual_segments
):
    cache = ExportCache()
    seen = []
    encoder = _encoder(
        fake_builder, spy_renderer, cache, progress_callback=lambda job: seen.append(job.status)
    )
    job = ExportJob(fingerprint="fp", format="mp4")

    entry = encoder.run(_request(source_video, bilingual_segments), job)

    graph = fake_builder.graphs[0]
    assert job.status is ExportStatus.COMPLETED
    assert job.progress_percent == 100.0
    assert job.eta_seconds == 0
    assert (job.target_width, job.target_height) == (64, 36)
    assert job.file_name == "clip_subs.mp4"
    assert len(graph.frames) == 10  # t = 0.0 .. 0.9 at 10 fps, stop at 1.0 - 0.05
    assert graph.finished and graph.closed
    assert set(seen) == {ExportStatus.RECORDING}
    assert cache.get("fp") is entry
    assert entry.mime == "video/mp4"


def test_captions_are_drawn_only_while_a_segment_is_active(
    fake_builder, spy_renderer, source_video, bilingual_segments
):
    encoder = _encoder(fake_builder, spy_renderer)

    encoder.run(_request(source_video, bilingual_segments), ExportJob("fp", "mp4"))

    # Segments cover [0, 0.3) and [0.5, 0.8): frames at 0.0-0.2 and 0.5-0.7
    texts = [seg.primary_text for seg in spy_renderer.calls]
    assert texts == ["Hello there."] * 3 + ["How are you?"] * 3


def test_view_mode_off_never_renders(fake_builder, spy_renderer, source_video, bilingual_segments):
    encoder = _encoder(fake_builder, spy_renderer)

    encoder.run(_request(source_video, bilingual_segments, ViewMode.OFF), ExportJob("fp", "mp4"))

    assert spy_renderer.calls == []
    assert len(fake_builder.graphs[0].frames) == 10


def test_end_of_stream_stops_recording(make_builder, spy_renderer, source_video):
    builder = make_builder(duration=5.0, frame_count=4)
    encoder = _encoder(builder, spy_renderer)
    job = ExportJob("fp", "mp4")

    encoder.run(_request(source_video, []), job)

    assert len(builder.graphs[0].frames) == 4
    assert job.status is ExportStatus.COMPLETED


def test_encoder_failure_releases_resources(make_builder, spy_renderer, source_video):
    builder = make_builder(fail_at=3)
    cache = ExportCache()
    encoder = _encoder(builder, spy_renderer, cache)
    job = ExportJob("fp", "mp4")

    with pytest.raises(EncodeError):
        encoder.run(_request(source_video, []), job)

    graph = builder.graphs[0]
    assert job.status is ExportStatus.FAILED
    assert job.error == "Export failed"
    assert graph.closed and not graph.finished
    assert cache.get("fp") is None


def test_cancel_is_not_an_error(fake_builder, spy_renderer, source_video):
    cache = ExportCache()
    encoder = _encoder(fake_builder, spy_renderer, cache)

    def cancel_after_two(job):
        if len(fake_builder.graphs[0].frames) == 2:
            encoder.cancel()

    encoder.progress_callback = cancel_after_two
    job = ExportJob("fp", "mp4")

    with pytest.raises(ExportCancelled):
        encoder.run(_request(source_video, []), job)

    graph = fake_builder.graphs[0]
    assert job.status is ExportStatus.CANCELLED
    assert job.error is None
    assert len(graph.frames) == 2
    assert graph.closed
    assert cache.get("fp") is None


def test_capability_failure_happens_before_any_graph(make_builder, spy_renderer, source_video):
    builder = make_builder(supported=[])
    encoder = _encoder(builder, spy_renderer)
    job = ExportJob("fp", "mp4")

    with pytest.raises(CapabilityError):
        encoder.run(_request(source_video, []), job)

    assert job.status is ExportStatus.FAILED
    assert builder.build_count == 0


def test_fallback_profile_is_recorded_on_the_job(make_builder, spy_renderer, source_video):
    builder = make_builder(supported=[WEBM_VP9_OPUS])
    job = ExportJob("fp", "mp4")

    entry = _encoder(builder, spy_renderer).run(_request(source_video, []), job)

    assert job.profile == WEBM_VP9_OPUS.name
    assert entry.mime == "video/webm"
    assert entry.suggested_file_name == "clip_subs.mp4"


def test_job_cannot_be_run_twice(fake_builder, spy_renderer, source_video):
    encoder = _encoder(fake_builder, spy_renderer)
    job = ExportJob("fp", "mp4")
    encoder.run(_request(source_video, []), job)

    with pytest.raises(RuntimeError, match="Illegal export transition"):
        encoder.run(_request(source_video, []), job)


def test_progress_and_eta_hysteresis():
    clock = FakeClock()
    tracker = ProgressTracker(100.0, clock)

    clock.now = 1.0
    assert tracker.update(1.0) == pytest.approx(1.0)
    assert tracker.eta_seconds is None

    clock.now = 10.0
    tracker.update(10.0)
    assert tracker.eta_seconds == 90

    clock.now = 10.2
    tracker.update(10.2)  # new estimate 89.8s is within 0.5s of 90
    assert tracker.eta_seconds == 90

    clock.now = 20.0
    tracker.update(20.0)
    assert tracker.eta_seconds == 80

    assert tracker.update(150.0) == 100.0


@pytest.mark.parametrize(
    "seconds, expected",
    [(None, "calculating"), (0, "0s"), (59, "59s"), (60, "1m 0s"), (125, "2m 5s")],
)
def test_format_eta(seconds, expected):
    assert format_eta(seconds) == expected


def test_decode_frame_clock_runs_until_told_to_stop():
    seen = []

    count = DecodeFrameClock(30).run(lambda index: seen.append(index) or index < 4)

    assert seen == [0, 1, 2, 3, 4]
    assert count == 4


def test_realtime_frame_clock_paces_to_wall_clock():
    clock = FakeClock()
    sleeps = []

    def sleep(seconds):
        sleeps.append(seconds)
        clock.sleep(seconds)

    count = RealtimeFrameClock(10, time_fn=clock, sleep_fn=sleep).run(lambda index: index < 3)

    assert count == 3
    assert sleeps == [pytest.approx(0.1)] * 3


def test_module_source_compiles_without_warnings():
    path = Path(export_encoder.__file__)

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(path.read_text(encoding="utf-8"), str(path), "exec")


def test_request_suggested_file_name(source_video):
    named = ExportRequest(source_video, [], StyleConfig(), ViewMode.DUAL, "webm", "My Talk.mov")
    unnamed = ExportRequest("", [], StyleConfig(), ViewMode.DUAL, "mkv")

    assert named.suggested_file_name == "My Talk_subs.webm"
    assert unnamed.suggested_file_name == "video_subs.mkv"


@pytest.mark.skipif(
    not (shutil.which("ffmpeg") and shutil.which("ffprobe")), reason="ffmpeg is not installed"
)
def test_real_ffmpeg_export(tmp_path, bilingual_segments):
    source = str(tmp_path / "clip.avi")
    writer = cv2.VideoWriter(source, cv2.VideoWriter_fourcc(*"MJPG"), 10, (160, 90))
    for idx in range(10):
        writer.write(np.full((90, 160, 3), 10 * idx, dtype=np.uint8))
    writer.release()

    encoder = ExportEncoder(CaptureGraphBuilder(), CaptionRenderer())
    job = ExportJob("fp", "mp4")

    entry = encoder.run(_request(source, bilingual_segments), job)

    assert job.status is ExportStatus.COMPLETED
    assert len(entry.artifact_bytes) > 0
