"""
Caption file export.

Each entry is a 1-based index line, a ``HH:MM:SS,mmm --> HH:MM:SS,mmm`` timing
line, the primary text, the secondary text and a blank line.
"""

from __future__ import annotations

import os
import re
from typing import List, Optional, Sequence

from caption_errors import ParseError
from caption_segments import CaptionSegment

_TIMING_RE = re.compile(
    r"^(\d{2,}):(\d{2}):(\d{2}),(\d{3})\s*-->\s*(\d{2,}):(\d{2}):(\d{2}),(\d{3})$"
)


def format_srt_timestamp(seconds: float) -> str:
    """Convert seconds to ``HH:MM:SS,mmm`` counted from a zero epoch."""

    total_ms = max(0, int(round(seconds * 1000)))
    ms = total_ms % 1000
    total_s = total_ms // 1000
    s = total_s % 60
    total_m = total_s // 60
    m = total_m % 60
    h = total_m // 60
    return f"{h:02d}:{m:02d}:{s:02d},{ms:03d}"


def _timestamp_to_seconds(h: str, m: str, s: str, ms: str) -> float:
    return int(h) * 3600 + int(m) * 60 + int(s) + int(ms) / 1000.0


def write_srt(segments: Sequence[CaptionSegment]) -> str:
    parts: List[str] = []
    for index, seg in enumerate(segments, start=1):
        parts.append(f"{index}\n")
        parts.append(
            f"{format_srt_timestamp(seg.start_time)} --> {format_srt_timestamp(seg.end_time)}\n"
        )
        parts.append(f"{seg.primary_text}\n{seg.secondary_text}\n\n")
    return "".join(parts)


def parse_srt(text: str) -> List[CaptionSegment]:
    """Read back a caption file produced by :func:`write_srt`."""

    text = text.lstrip("\ufeff").replace("\r\n", "\n")
    lines = text.split("\n")
    segments: List[CaptionSegment] = []
    i = 0
    while i < len(lines):
        if not lines[i].strip():
            i += 1
            continue
        if not lines[i].strip().isdigit():
            raise ParseError(f"Line {i + 1}: expected a sequence number, got {lines[i]!r}")
        if i + 3 >= len(lines):
            raise ParseError(f"Line {i + 1}: truncated caption entry")
        match = _TIMING_RE.match(lines[i + 1].strip())
        if not match:
            raise ParseError(f"Line {i + 2}: malformed timing line {lines[i + 1]!r}")
        g = match.groups()
        segments.append(
            CaptionSegment(
                start_time=_timestamp_to_seconds(*g[:4]),
                end_time=_timestamp_to_seconds(*g[4:]),
                primary_text=lines[i + 2],
                secondary_text=lines[i + 3],
            )
        )
        i += 4
    return segments


def srt_filename_for(source_name: Optional[str]) -> str:
    """``clip.mp4`` -> ``clip.srt``; no source -> ``subtitles.srt``."""

    stem = os.path.splitext(os.path.basename(source_name))[0] if source_name else ""
    return f"{stem or 'subtitles'}.srt"
