"""
Export Encoder - drives the burn-in draw loop for one export job.

Lifecycle of a job:

    idle -> preparing -> recording -> finalizing -> completed
                     `-> failed      `-> failed     `-> failed
                     `-> cancelled   `-> cancelled  `-> cancelled

``preparing`` probes the source, picks the first supported encoding profile
for the requested format and opens a CaptureGraph. ``recording`` asks a
FrameClock for frames; on every frame the source picture is read, the active
caption is located and drawn, and the frame is piped to the encoder.
``finalizing`` collects the encoded file and hands it to the ExportCache.
The capture graph is closed on every exit path.
"""

from __future__ import annotations

import logging
import math
import os
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional, Sequence

import config
from caption_errors import CapabilityError, EncodeError, ExportCancelled
from caption_renderer import CaptionRenderer, StyleConfig, ViewMode
from caption_segments import CaptionSegment
from capture_graph import CaptureGraph, CaptureGraphBuilder, compute_target_dimensions
from export_cache import ExportCache, ExportCacheEntry
from segment_locator import ActiveSegmentLocator

logger = logging.getLogger(__name__)

ETA_MIN_PROGRESS = 2.0  # percent
ETA_HYSTERESIS_SECONDS = 0.5


class ExportStatus(str, Enum):
    IDLE = "idle"
    PREPARING = "preparing"
    RECORDING = "recording"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExportStatus.COMPLETED, ExportStatus.FAILED, ExportStatus.CANCELLED)


_ALLOWED_TRANSITIONS = {
    ExportStatus.IDLE: {ExportStatus.PREPARING},
    ExportStatus.PREPARING: {ExportStatus.RECORDING, ExportStatus.FAILED, ExportStatus.CANCELLED},
    ExportStatus.RECORDING: {ExportStatus.FINALIZING, ExportStatus.FAILED, ExportStatus.CANCELLED},
    ExportStatus.FINALIZING: {ExportStatus.COMPLETED, ExportStatus.FAILED, ExportStatus.CANCELLED},
}


@dataclass
class ExportJob:
    fingerprint: str
    format: str
    target_width: int = 0
    target_height: int = 0
    bitrate_video: int = config.VIDEO_BITRATE
    bitrate_audio: int = config.AUDIO_BITRATE
    status: ExportStatus = ExportStatus.IDLE
    progress_percent: float = 0.0
    eta_seconds: Optional[int] = None
    error: Optional[str] = None
    file_name: str = ""
    profile: Optional[str] = None
    cached: bool = False  # Served from the ExportCache without encoding
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "format": self.format,
            "targetWidth": self.target_width,
            "targetHeight": self.target_height,
            "bitrateVideo": self.bitrate_video,
            "bitrateAudio": self.bitrate_audio,
            "status": self.status.value,
            "progressPercent": round(self.progress_percent, 2),
            "etaSeconds": self.eta_seconds,
            "eta": format_eta(self.eta_seconds),
            "error": self.error,
            "fileName": self.file_name,
            "profile": self.profile,
            "cached": self.cached,
        }


@dataclass(frozen=True)
class ExportRequest:
    source_path: str
    segments: Sequence[CaptionSegment]
    style: StyleConfig
    view_mode: ViewMode
    format: str = "mp4"
    source_name: Optional[str] = None

    @property
    def suggested_file_name(self) -> str:
        name = self.source_name or os.path.basename(self.source_path)
        stem = os.path.splitext(name)[0] if name else ""
        return f"{stem or 'video'}_subs.{self.format}"


def format_eta(seconds: Optional[float]) -> str:
    if seconds is None:
        return "calculating"
    seconds = max(0, int(seconds))
    if seconds < 60:
        return f"{seconds}s"
    return f"{seconds // 60}m {seconds % 60}s"


class ProgressTracker:
    """Progress against the source duration, with a damped ETA."""

    def __init__(self, duration: float, time_fn: Callable[[], float] = time.monotonic):
        self.duration = duration
        self._time_fn = time_fn
        self._started = time_fn()
        self.progress_percent = 0.0
        self.eta_seconds: Optional[int] = None

    def update(self, current_time: float) -> float:
        if self.duration > 0:
            self.progress_percent = min(100.0, current_time / self.duration * 100.0)
        if self.progress_percent > ETA_MIN_PROGRESS:
            elapsed = self._time_fn() - self._started
            estimate = elapsed / self.progress_percent * (100.0 - self.progress_percent)
            if self.eta_seconds is None or abs(estimate - self.eta_seconds) > ETA_HYSTERESIS_SECONDS:
                self.eta_seconds = int(math.ceil(estimate))
        return self.progress_percent


# --------------------------------------------------------------------------- #
# Frame clocks
# --------------------------------------------------------------------------- #


class FrameClock:
    """Schedules the draw loop one frame at a time.

    ``on_frame_ready(frame_index)`` returns False to stop the clock.
    """

    def __init__(self, fps: float):
        self.fps = fps

    def run(self, on_frame_ready: Callable[[int], bool]) -> int:
        raise NotImplementedError


class DecodeFrameClock(FrameClock):
    """Next frame as soon as the previous one has been consumed."""

    def run(self, on_frame_ready: Callable[[int], bool]) -> int:
        index = 0
        while on_frame_ready(index):
            index += 1
        return index


class RealtimeFrameClock(FrameClock):
    """Paces frames against the wall clock at ``fps``."""

    def __init__(
        self,
        fps: float,
        time_fn: Callable[[], float] = time.monotonic,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        super().__init__(fps)
        self._time_fn = time_fn
        self._sleep_fn = sleep_fn

    def run(self, on_frame_ready: Callable[[int], bool]) -> int:
        started = self._time_fn()
        index = 0
        while True:
            delay = started + index / self.fps - self._time_fn()
            if delay > 0:
                self._sleep_fn(delay)
            if not on_frame_ready(index):
                return index
            index += 1


# --------------------------------------------------------------------------- #
# Encoder
# --------------------------------------------------------------------------- #


class ExportEncoder:
    def __init__(
        self,
        builder: CaptureGraphBuilder,
        renderer: CaptionRenderer,
        cache: Optional[ExportCache] = None,
        clock_factory: Callable[[float], FrameClock] = DecodeFrameClock,
        end_epsilon: float = config.END_EPSILON_SECONDS,
        max_width: int = config.MAX_EXPORT_WIDTH,
        max_height: int = config.MAX_EXPORT_HEIGHT,
        progress_callback: Optional[Callable[[ExportJob], None]] = None,
        time_fn: Callable[[], float] = time.monotonic,
    ):
        self.builder = builder
        self.renderer = renderer
        self.cache = cache
        self.clock_factory = clock_factory
        self.end_epsilon = end_epsilon
        self.max_width = max_width
        self.max_height = max_height
        self.progress_callback = progress_callback
        self._time_fn = time_fn
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Ask the running draw loop to stop at its next frame."""
        self._cancel.set()

    @staticmethod
    def _transition(job: ExportJob, status: ExportStatus) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(job.status, set())
        if status not in allowed:
            raise RuntimeError(f"Illegal export transition {job.status.value} -> {status.value}")
        logger.info(f"  [EXPORT] {job.status.value} -> {status.value}")
        job.status = status

    def prepare(self, request: ExportRequest, job: ExportJob) -> CaptureGraph:
        """Acquire the capture graph; CapabilityError leaves the job FAILED."""

        self._cancel.clear()
        self._transition(job, ExportStatus.PREPARING)
        job.file_name = request.suggested_file_name
        try:
            source = self.builder.probe(request.source_path)
            profile = self.builder.select_profile(request.format)
            width, height = compute_target_dimensions(
                source.width, source.height, self.max_width, self.max_height
            )
            job.target_width, job.target_height = width, height
            job.profile = profile.name
            graph = self.builder.build(request.source_path, source, profile, width, height)
        except CapabilityError as e:
            job.error = str(e)
            self._transition(job, ExportStatus.FAILED)
            raise
        except Exception:
            job.error = "Export failed"
            self._transition(job, ExportStatus.FAILED)
            raise
        logger.info(
            f"  [EXPORT] Prepared {job.file_name}: {width}x{height}, {profile.name}, "
            f"{source.duration:.2f}s"
        )
        return graph

    def record(
        self, request: ExportRequest, job: ExportJob, graph: CaptureGraph
    ) -> ExportCacheEntry:
        """Run the draw loop to completion and return the finished artifact."""

        try:
            self._transition(job, ExportStatus.RECORDING)
            # Private cursor: the export never moves a live playback session
            locator = ActiveSegmentLocator(tuple(request.segments))
            tracker = ProgressTracker(graph.duration, self._time_fn)
            fps = float(graph.fps)
            duration = graph.duration
            stop_at = duration - self.end_epsilon if duration > 0 else math.inf

            def on_frame_ready(index: int) -> bool:
                if self._cancel.is_set():
                    raise ExportCancelled("Export cancelled by user")
                media_time = index / fps
                if media_time >= stop_at:
                    return False
                frame = graph.read_canvas(media_time)
                if frame is None:
                    return False
                if request.view_mode != ViewMode.OFF:
                    segment = locator.locate(media_time)
                    if segment is not None:
                        frame = self.renderer.render(
                            frame, segment, request.style, request.view_mode
                        )
                graph.write_frame(frame)
                job.progress_percent = tracker.update(media_time)
                job.eta_seconds = tracker.eta_seconds
                if self.progress_callback is not None:
                    self.progress_callback(job)
                return True

            frames = self.clock_factory(fps).run(on_frame_ready)
            if frames == 0:
                raise EncodeError("Source produced no frames")

            self._transition(job, ExportStatus.FINALIZING)
            data = graph.finish()
            entry = ExportCacheEntry(
                fingerprint=job.fingerprint,
                artifact_bytes=data,
                suggested_file_name=job.file_name,
                mime=(job.profile or "application/octet-stream").split(";")[0],
            )
            if self.cache is not None:
                self.cache.put(entry)
            job.progress_percent = 100.0
            job.eta_seconds = 0
            self._transition(job, ExportStatus.COMPLETED)
            logger.info(f"  [EXPORT] ✓ {job.file_name} ({len(data)} bytes, {frames} frames)")
            return entry
        except ExportCancelled:
            self._transition(job, ExportStatus.CANCELLED)
            logger.info(f"  [EXPORT] Cancelled at {job.progress_percent:.1f}%")
            raise
        except Exception as e:
            job.error = "Export failed"
            self._transition(job, ExportStatus.FAILED)
            logger.error(f"  [EXPORT] ✗ Failed: {e}")
            raise
        finally:
            graph.close()

    def run(self, request: ExportRequest, job: ExportJob) -> ExportCacheEntry:
        """``prepare`` then ``record`` on the calling thread."""

        graph = self.prepare(request, job)
        return self.record(request, job, graph)
