from __future__ import annotations

import functools
import json
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

import cv2
import numpy as np

import config
from caption_errors import CapabilityError, EncodeError

logger = logging.getLogger(__name__)


# --------------------------------------------------------------------------- #
# Formats
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class EncodingProfile:
    """A concrete container/codec combination the encoder may be asked for."""

    name: str  # MIME-style identifier, e.g. "video/mp4;codecs=avc1.640034,mp4a.40.2"
    muxer: str  # ffmpeg muxer (-f)
    video_codec: str  # ffmpeg video encoder (-c:v)
    audio_codec: str  # ffmpeg audio encoder (-c:a)
    extension: str  # Extension of the intermediate output file
    video_args: Tuple[str, ...] = ()
    muxer_args: Tuple[str, ...] = ()


MP4_H264_HIGH = EncodingProfile(
    name="video/mp4;codecs=avc1.640034,mp4a.40.2",
    muxer="mp4",
    video_codec="libx264",
    audio_codec="aac",
    extension="mp4",
    video_args=("-profile:v", "high", "-level:v", "5.2", "-preset", "fast"),
    muxer_args=("-movflags", "+faststart"),
)
MP4_H264_BASELINE = EncodingProfile(
    name="video/mp4;codecs=avc1.42E01E,mp4a.40.2",
    muxer="mp4",
    video_codec="libx264",
    audio_codec="aac",
    extension="mp4",
    video_args=("-profile:v", "baseline", "-level:v", "3.0", "-preset", "fast"),
    muxer_args=("-movflags", "+faststart"),
)
MP4_GENERIC = EncodingProfile(
    name="video/mp4",
    muxer="mp4",
    video_codec="mpeg4",
    audio_codec="aac",
    extension="mp4",
    muxer_args=("-movflags", "+faststart"),
)
WEBM_VP9_OPUS = EncodingProfile(
    name="video/webm;codecs=vp9,opus",
    muxer="webm",
    video_codec="libvpx-vp9",
    audio_codec="libopus",
    extension="webm",
    video_args=("-deadline", "realtime", "-cpu-used", "8", "-row-mt", "1"),
)
WEBM_VP8_OPUS = EncodingProfile(
    name="video/webm;codecs=vp8,opus",
    muxer="webm",
    video_codec="libvpx",
    audio_codec="libopus",
    extension="webm",
    video_args=("-deadline", "realtime", "-cpu-used", "8"),
)
WEBM_GENERIC = EncodingProfile(
    name="video/webm",
    muxer="webm",
    video_codec="libvpx",
    audio_codec="libvorbis",
    extension="webm",
    video_args=("-deadline", "realtime"),
)

_MP4_FIRST = [MP4_H264_HIGH, MP4_H264_BASELINE, MP4_GENERIC, WEBM_VP9_OPUS, WEBM_GENERIC]
_WEBM_FIRST = [WEBM_VP9_OPUS, WEBM_VP8_OPUS, WEBM_GENERIC, MP4_H264_HIGH, MP4_GENERIC]

# Ordered preferences per user-selectable format; the first supported entry wins.
FORMAT_PREFERENCES: Dict[str, List[EncodingProfile]] = {
    "mp4": _MP4_FIRST,
    "mov": _MP4_FIRST,
    "webm": _WEBM_FIRST,
    "mkv": _WEBM_FIRST,
    "avi": _WEBM_FIRST,
}
EXPORT_FORMATS = tuple(FORMAT_PREFERENCES)


@dataclass(frozen=True)
class FfmpegCapabilities:
    encoders: FrozenSet[str]
    muxers: FrozenSet[str]

    def supports(self, profile: EncodingProfile) -> bool:
        return (
            profile.muxer in self.muxers
            and profile.video_codec in self.encoders
            and profile.audio_codec in self.encoders
        )


def select_profile(
    export_format: str, is_supported: Callable[[EncodingProfile], bool]
) -> EncodingProfile:
    """Return the first supported profile in the format's preference list."""

    preferences = FORMAT_PREFERENCES.get(export_format)
    if preferences is None:
        raise CapabilityError(
            f"Unknown export format '{export_format}' (expected one of {', '.join(EXPORT_FORMATS)})"
        )
    for profile in preferences:
        if is_supported(profile):
            return profile
    raise CapabilityError(f"No supported encoder for format '{export_format}'")


def compute_target_dimensions(
    width: int,
    height: int,
    max_width: int = config.MAX_EXPORT_WIDTH,
    max_height: int = config.MAX_EXPORT_HEIGHT,
) -> Tuple[int, int]:
    """Clamp to the bounding box keeping the aspect ratio; both sides even."""

    if width <= 0 or height <= 0:
        raise CapabilityError(f"Source reports invalid dimensions {width}x{height}")

    target_width, target_height = width, height
    if target_width > max_width or target_height > max_height:
        ratio = width / float(height)
        if ratio > 1:
            target_width = max_width
            target_height = int(round(max_width / ratio))
        else:
            target_height = max_height
            target_width = int(round(max_height * ratio))
        # A landscape clip that is still too tall (or portrait too wide) gets a second pass
        if target_height > max_height:
            target_height = max_height
            target_width = int(round(max_height * ratio))
        if target_width > max_width:
            target_width = max_width
            target_height = int(round(max_width / ratio))

    if target_width % 2:
        target_width -= 1
    if target_height % 2:
        target_height -= 1
    return max(2, target_width), max(2, target_height)


# --------------------------------------------------------------------------- #
# ffmpeg / ffprobe probing
# --------------------------------------------------------------------------- #


def require_binary(binary: str) -> str:
    path = shutil.which(binary)
    if not path:
        raise CapabilityError(f"'{binary}' was not found on PATH; video export is unavailable")
    return path


def _parse_listing(output: str) -> FrozenSet[str]:
    """Collect names from ``ffmpeg -encoders`` / ``ffmpeg -muxers`` output."""

    names = set()
    in_body = False
    for line in output.splitlines():
        stripped = line.strip()
        if not in_body:
            if stripped.startswith("--"):
                in_body = True
            continue
        tokens = stripped.split()
        if len(tokens) >= 2:
            names.update(tokens[1].split(","))
    return frozenset(names)


@functools.lru_cache(maxsize=4)
def probe_ffmpeg_capabilities(ffmpeg_bin: str = config.FFMPEG_BIN) -> FfmpegCapabilities:
    """Ask ffmpeg which encoders and muxers this build ships with."""

    binary = require_binary(ffmpeg_bin)
    listings = {}
    for flag in ("-encoders", "-muxers"):
        try:
            result = subprocess.run(
                [binary, "-hide_banner", flag],
                capture_output=True,
                text=True,
                check=True,
            )
        except (subprocess.CalledProcessError, OSError) as e:
            raise CapabilityError(f"Could not query ffmpeg {flag}: {e}") from e
        listings[flag] = _parse_listing(result.stdout)
    caps = FfmpegCapabilities(encoders=listings["-encoders"], muxers=listings["-muxers"])
    logger.info(
        "  [CAPTURE] ffmpeg capabilities: %d encoders, %d muxers",
        len(caps.encoders),
        len(caps.muxers),
    )
    return caps


def ffprobe_duration_seconds(path: str, ffprobe_bin: str = config.FFPROBE_BIN) -> Optional[float]:
    """Return media duration in seconds using ffprobe when available."""

    try:
        result = subprocess.run(
            [
                ffprobe_bin,
                "-v",
                "error",
                "-show_entries",
                "format=duration",
                "-of",
                "default=noprint_wrappers=1:nokey=1",
                path,
            ],
            capture_output=True,
            text=True,
            check=True,
        )
        duration = float((result.stdout or "").strip())
        return duration if duration > 0 else None
    except (subprocess.CalledProcessError, OSError, ValueError):
        return None


def ffprobe_has_audio(path: str, ffprobe_bin: str = config.FFPROBE_BIN) -> bool:
    """True when ``path`` carries at least one audio stream."""

    try:
        result = subprocess.run(
            [
                ffprobe_bin,
                "-v",
                "error",
                "-select_streams",
                "a:0",
                "-show_entries",
                "stream=codec_type",
                "-of",
                "json",
                path,
            ],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return False
    if result.returncode != 0:
        return False
    try:
        streams = json.loads(result.stdout or "{}").get("streams") or []
    except json.JSONDecodeError:
        return False
    return any(stream.get("codec_type") == "audio" for stream in streams)


@dataclass(frozen=True)
class SourceInfo:
    width: int
    height: int
    fps: float
    frame_count: int
    duration: float
    has_audio: bool


def probe_source(path: str, ffprobe_bin: str = config.FFPROBE_BIN) -> SourceInfo:
    """Return geometry, frame rate, duration and audio presence for ``path``."""

    cap = cv2.VideoCapture(path)
    if not cap.isOpened():
        raise CapabilityError(f"Cannot open video file for decoding: {path}")
    try:
        fps = float(cap.get(cv2.CAP_PROP_FPS) or 0.0)
        frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT) or 0)
        width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH) or 0)
        height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT) or 0)
    finally:
        cap.release()
    if fps <= 0:
        fps = 25.0

    duration = ffprobe_duration_seconds(path, ffprobe_bin)
    if not duration:
        duration = frame_count / fps if frame_count else 0.0

    return SourceInfo(
        width=width,
        height=height,
        fps=fps,
        frame_count=frame_count,
        duration=duration,
        has_audio=ffprobe_has_audio(path, ffprobe_bin),
    )


# --------------------------------------------------------------------------- #
# Decode side
# --------------------------------------------------------------------------- #


class SourceDecoder:
    """Private offscreen decode of the source, sampled by presentation time.

    Never shares state with a user-facing player: each export opens its own
    capture and walks it forward from zero.
    """

    def __init__(self, path: str, fps: float):
        self.path = path
        self.fps = fps if fps > 0 else 25.0
        self._cap: Optional[cv2.VideoCapture] = None
        self._frame: Optional[np.ndarray] = None
        self._frames_read = 0
        self._exhausted = False

    def open(self) -> "SourceDecoder":
        cap = cv2.VideoCapture(self.path)
        if not cap.isOpened():
            raise CapabilityError(f"Cannot open video file for decoding: {self.path}")
        self._cap = cap
        return self

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    def frame_at(self, time: float) -> Optional[np.ndarray]:
        """Return the source frame showing at ``time``; None once the stream ended."""

        if self._cap is None:
            raise RuntimeError("SourceDecoder is not open")
        # Frame k is on screen during [k / fps, (k + 1) / fps)
        while not self._exhausted and (
            self._frame is None or self._frames_read / self.fps <= time + 1e-9
        ):
            ok, frame = self._cap.read()
            if not ok:
                self._exhausted = True
                break
            self._frame = frame
            self._frames_read += 1
        if self._exhausted:
            return None
        return self._frame

    def release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None
        self._frame = None


# --------------------------------------------------------------------------- #
# Capture graph
# --------------------------------------------------------------------------- #


def build_encoder_command(
    ffmpeg_bin: str,
    profile: EncodingProfile,
    width: int,
    height: int,
    fps: int,
    source_path: str,
    has_audio: bool,
    output_path: str,
    video_bitrate: int = config.VIDEO_BITRATE,
    audio_bitrate: int = config.AUDIO_BITRATE,
    keyframe_interval: float = config.KEYFRAME_INTERVAL_SECONDS,
) -> List[str]:
    """Raw BGR frames on stdin (input 0) muxed with the source's audio (input 1)."""

    cmd: List[str] = [
        ffmpeg_bin,
        "-y",
        "-hide_banner",
        "-loglevel",
        "error",
        "-f",
        "rawvideo",
        "-pix_fmt",
        "bgr24",
        "-s",
        f"{width}x{height}",
        "-r",
        str(fps),
        "-i",
        "pipe:0",
    ]
    if has_audio:
        cmd += ["-i", source_path]

    cmd += ["-map", "0:v:0"]
    if has_audio:
        cmd += ["-map", "1:a:0"]

    cmd += ["-c:v", profile.video_codec, *profile.video_args]
    cmd += [
        "-b:v",
        str(int(video_bitrate)),
        "-g",
        str(max(1, int(round(fps * keyframe_interval)))),
        "-pix_fmt",
        "yuv420p",
    ]
    if has_audio:
        cmd += ["-c:a", profile.audio_codec, "-b:a", str(int(audio_bitrate)), "-shortest"]
    else:
        cmd += ["-an"]

    cmd += [*profile.muxer_args, "-f", profile.muxer, output_path]
    return cmd


class CaptureGraph:
    """Session-scoped decode + encode resources for one export.

    Owns the offscreen decoder, the ffmpeg encoder process, its stderr log and
    a scratch directory. :meth:`close` releases all of them and is safe to call
    on every exit path (use the graph as a context manager).
    """

    def __init__(
        self,
        source_path: str,
        source: SourceInfo,
        profile: EncodingProfile,
        width: int,
        height: int,
        fps: int = config.CAPTURE_FPS,
        ffmpeg_bin: str = config.FFMPEG_BIN,
        video_bitrate: int = config.VIDEO_BITRATE,
        audio_bitrate: int = config.AUDIO_BITRATE,
        keyframe_interval: float = config.KEYFRAME_INTERVAL_SECONDS,
    ):
        self.source_path = source_path
        self.source = source
        self.profile = profile
        self.width = width
        self.height = height
        self.fps = fps
        self.ffmpeg_bin = ffmpeg_bin
        self.video_bitrate = video_bitrate
        self.audio_bitrate = audio_bitrate
        self.keyframe_interval = keyframe_interval

        self._decoder: Optional[SourceDecoder] = None
        self._process: Optional[subprocess.Popen] = None
        self._scratch: Optional[tempfile.TemporaryDirectory] = None
        self._stderr_file = None
        self._output_path: Optional[str] = None
        self._log_path: Optional[str] = None

    @property
    def duration(self) -> float:
        return self.source.duration

    @property
    def has_audio(self) -> bool:
        return self.source.has_audio

    def open(self) -> "CaptureGraph":
        try:
            self._decoder = SourceDecoder(self.source_path, self.source.fps).open()
            self._scratch = tempfile.TemporaryDirectory(prefix="caption_export_")
            self._output_path = os.path.join(self._scratch.name, f"export.{self.profile.extension}")
            self._log_path = os.path.join(self._scratch.name, "ffmpeg.log")
            cmd = build_encoder_command(
                self.ffmpeg_bin,
                self.profile,
                self.width,
                self.height,
                self.fps,
                self.source_path,
                self.source.has_audio,
                self._output_path,
                video_bitrate=self.video_bitrate,
                audio_bitrate=self.audio_bitrate,
                keyframe_interval=self.keyframe_interval,
            )
            logger.debug(f"  [CAPTURE] Running: {' '.join(cmd)}")
            self._stderr_file = open(self._log_path, "wb")
            self._process = subprocess.Popen(
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=self._stderr_file,
            )
        except OSError as e:
            self.close()
            raise CapabilityError(f"Could not start the encoder: {e}") from e
        except Exception:
            self.close()
            raise

        logger.info(
            "  [CAPTURE] Graph open: %dx%d @ %dfps, %s, audio=%s",
            self.width,
            self.height,
            self.fps,
            self.profile.name,
            "yes" if self.source.has_audio else "no",
        )
        return self

    def __enter__(self) -> "CaptureGraph":
        if self._process is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def stderr_tail(self, limit: int = 500) -> str:
        if not self._log_path or not os.path.exists(self._log_path):
            return ""
        if self._stderr_file is not None and not self._stderr_file.closed:
            self._stderr_file.flush()
        with open(self._log_path, "rb") as f:
            data = f.read()
        return data.decode("utf-8", errors="replace")[-limit:]

    def read_canvas(self, time: float) -> Optional[np.ndarray]:
        """The source frame at ``time`` scaled onto the export canvas."""

        frame = self._decoder.frame_at(time) if self._decoder is not None else None
        if frame is None:
            return None
        if frame.shape[1] != self.width or frame.shape[0] != self.height:
            frame = cv2.resize(frame, (self.width, self.height), interpolation=cv2.INTER_AREA)
        return frame

    def write_frame(self, frame: np.ndarray) -> None:
        if self._process is None or self._process.stdin is None:
            raise EncodeError("Encoder is not running")
        if frame.shape[:2] != (self.height, self.width):
            raise EncodeError(
                f"Frame size {frame.shape[1]}x{frame.shape[0]} does not match canvas "
                f"{self.width}x{self.height}"
            )
        try:
            self._process.stdin.write(np.ascontiguousarray(frame, dtype=np.uint8).tobytes())
        except (BrokenPipeError, OSError) as e:
            tail = self.stderr_tail()
            logger.error(f"  [CAPTURE] ✗ Encoder pipe failed: {tail or e}")
            raise EncodeError("Encoder stopped accepting frames") from e

    def finish(self) -> bytes:
        """Flush the encoder and return the finished artifact."""

        if self._process is None:
            raise EncodeError("Encoder is not running")
        try:
            if self._process.stdin is not None and not self._process.stdin.closed:
                self._process.stdin.close()
        except (BrokenPipeError, OSError):
            pass  # surfaced through the exit status below
        returncode = self._process.wait()
        if returncode != 0:
            tail = self.stderr_tail()
            logger.error(f"  [CAPTURE] ✗ ffmpeg exited with {returncode}: {tail}")
            raise EncodeError(f"Encoder exited with status {returncode}")

        output = Path(self._output_path)
        if not output.exists() or output.stat().st_size == 0:
            raise EncodeError("Encoder produced no output")
        return output.read_bytes()

    def close(self) -> None:
        """Release every resource; idempotent."""

        process, self._process = self._process, None
        if process is not None:
            if process.stdin is not None and not process.stdin.closed:
                try:
                    process.stdin.close()
                except (BrokenPipeError, OSError):
                    pass
            if process.poll() is None:
                process.kill()
                process.wait()

        if self._decoder is not None:
            self._decoder.release()
            self._decoder = None

        if self._stderr_file is not None:
            self._stderr_file.close()
            self._stderr_file = None

        if self._scratch is not None:
            self._scratch.cleanup()
            self._scratch = None


class CaptureGraphBuilder:
    """Checks runtime capabilities and assembles CaptureGraphs."""

    def __init__(
        self,
        ffmpeg_bin: str = config.FFMPEG_BIN,
        ffprobe_bin: str = config.FFPROBE_BIN,
        fps: int = config.CAPTURE_FPS,
        video_bitrate: int = config.VIDEO_BITRATE,
        audio_bitrate: int = config.AUDIO_BITRATE,
        keyframe_interval: float = config.KEYFRAME_INTERVAL_SECONDS,
    ):
        self.ffmpeg_bin = ffmpeg_bin
        self.ffprobe_bin = ffprobe_bin
        self.fps = fps
        self.video_bitrate = video_bitrate
        self.audio_bitrate = audio_bitrate
        self.keyframe_interval = keyframe_interval

    def capabilities(self) -> FfmpegCapabilities:
        return probe_ffmpeg_capabilities(self.ffmpeg_bin)

    def select_profile(self, export_format: str) -> EncodingProfile:
        return select_profile(export_format, self.capabilities().supports)

    def probe(self, source_path: str) -> SourceInfo:
        require_binary(self.ffprobe_bin)
        if not os.path.exists(source_path):
            raise CapabilityError(f"Source video not found: {source_path}")
        return probe_source(source_path, self.ffprobe_bin)

    def build(
        self,
        source_path: str,
        source: SourceInfo,
        profile: EncodingProfile,
        width: int,
        height: int,
    ) -> CaptureGraph:
        graph = CaptureGraph(
            source_path,
            source,
            profile,
            width,
            height,
            fps=self.fps,
            ffmpeg_bin=self.ffmpeg_bin,
            video_bitrate=self.video_bitrate,
            audio_bitrate=self.audio_bitrate,
            keyframe_interval=self.keyframe_interval,
        )
        return graph.open()

