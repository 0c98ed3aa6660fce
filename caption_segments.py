from __future__ import annotations

import json
import logging
import math
import re
import threading
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterator, List, Mapping, Sequence, Tuple

from caption_errors import ParseError

logger = logging.getLogger(__name__)

# Degenerate spans (end <= start) are stretched to this length.
MIN_DURATION = 1.5

REQUIRED_FIELDS = ("startTime", "endTime", "primaryText", "secondaryText")

# A caption text is one line per layer in the caption file
_LINE_BREAK_RE = re.compile(r"\r\n|[\r\n]")


# --------------------------------------------------------------------------- #
# Data model
# --------------------------------------------------------------------------- #


@dataclass(frozen=True)
class CaptionSegment:
    """A timed caption with two parallel text variants."""

    start_time: float  # Seconds
    end_time: float  # Seconds
    primary_text: str
    secondary_text: str

    def contains(self, time: float) -> bool:
        """Half-open containment: ``start <= time < end``."""
        return self.start_time <= time < self.end_time

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the transcript collaborator's wire shape."""
        return {
            "startTime": self.start_time,
            "endTime": self.end_time,
            "primaryText": self.primary_text,
            "secondaryText": self.secondary_text,
        }


# --------------------------------------------------------------------------- #
# Parsing
# --------------------------------------------------------------------------- #


def _parse_time(item: Mapping[str, Any], key: str, index: int) -> float:
    value = item[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ParseError(f"Segment {index}: '{key}' must be a number, got {type(value).__name__}")
    value = float(value)
    if not math.isfinite(value):
        raise ParseError(f"Segment {index}: '{key}' must be finite")
    return value


def parse_segment(item: Any, index: int = 0) -> CaptionSegment:
    """Validate one raw segment object. Raises ParseError on any defect."""

    if not isinstance(item, Mapping):
        raise ParseError(f"Segment {index}: expected an object, got {type(item).__name__}")

    missing = [key for key in REQUIRED_FIELDS if key not in item]
    if missing:
        raise ParseError(f"Segment {index}: missing required field(s) {', '.join(missing)}")

    for key in ("primaryText", "secondaryText"):
        if not isinstance(item[key], str):
            raise ParseError(f"Segment {index}: '{key}' must be a string")

    start_time = _parse_time(item, "startTime", index)
    if start_time < 0:
        raise ParseError(f"Segment {index}: 'startTime' must not be negative")

    return CaptionSegment(
        start_time=start_time,
        end_time=_parse_time(item, "endTime", index),
        primary_text=_LINE_BREAK_RE.sub(" ", item["primaryText"]),
        secondary_text=_LINE_BREAK_RE.sub(" ", item["secondaryText"]),
    )


def parse_segments(raw: Any) -> List[CaptionSegment]:
    """Parse the collaborator's segment list.

    A single bad entry fails the whole list; nothing is silently dropped.
    Accepts either a bare list or an object with a ``segments`` list.
    """

    if isinstance(raw, Mapping) and "segments" in raw:
        raw = raw["segments"]
    if not isinstance(raw, (list, tuple)):
        raise ParseError(f"Expected a list of segments, got {type(raw).__name__}")
    return [parse_segment(item, idx) for idx, item in enumerate(raw)]


def parse_segments_json(text: str) -> List[CaptionSegment]:
    """Parse a JSON document holding the segment list."""

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid segment JSON: {e}") from e
    return parse_segments(data)


# --------------------------------------------------------------------------- #
# Normalization
# --------------------------------------------------------------------------- #


def normalize_segments(segments: Sequence[CaptionSegment]) -> List[CaptionSegment]:
    """Sort, clamp and trim ``segments`` so they are ordered and never overlap.

    1. Stable sort by start time.
    2. Any span with ``end <= start`` becomes ``start + MIN_DURATION``.
    3. Each segment's end is trimmed to the next segment's start.
    Segments collapsed to zero length by step 3 (equal start times) are dropped.
    """

    ordered = sorted(segments, key=lambda seg: seg.start_time)

    clamped: List[CaptionSegment] = []
    for seg in ordered:
        if seg.end_time <= seg.start_time:
            logger.info(
                "  [SEGMENTS] Clamped degenerate span %.3f-%.3fs to %.1fs",
                seg.start_time,
                seg.end_time,
                MIN_DURATION,
            )
            seg = replace(seg, end_time=seg.start_time + MIN_DURATION)
        clamped.append(seg)

    for idx in range(len(clamped) - 1):
        current, nxt = clamped[idx], clamped[idx + 1]
        if current.end_time > nxt.start_time:
            clamped[idx] = replace(current, end_time=nxt.start_time)

    result: List[CaptionSegment] = []
    for seg in clamped:
        if seg.end_time <= seg.start_time:
            logger.warning(
                "  [SEGMENTS] Dropped segment collapsed by overlap trim at %.3fs: %r",
                seg.start_time,
                seg.primary_text,
            )
            continue
        result.append(seg)
    return result


# --------------------------------------------------------------------------- #
# Store
# --------------------------------------------------------------------------- #


class SegmentStore:
    """Holds the current normalized segment list.

    The list is an immutable tuple replaced wholesale on every generation, so
    readers holding a snapshot always see one complete generation.
    """

    def __init__(self, segments: Sequence[CaptionSegment] = ()):
        self._lock = threading.Lock()
        self._segments: Tuple[CaptionSegment, ...] = tuple(normalize_segments(segments))
        self._generation = 0

    @classmethod
    def from_raw(cls, raw: Any) -> "SegmentStore":
        return cls(parse_segments(raw))

    @property
    def generation(self) -> int:
        return self._generation

    def snapshot(self) -> Tuple[CaptionSegment, ...]:
        return self._segments

    def replace(self, raw: Any) -> Tuple[CaptionSegment, ...]:
        """Parse, normalize and atomically swap in a new generation."""

        normalized = tuple(normalize_segments(parse_segments(raw)))
        with self._lock:
            self._segments = normalized
            self._generation += 1
        logger.info(
            "  [SEGMENTS] Generation %d loaded (%d segments)", self._generation, len(normalized)
        )
        return normalized

    def clear(self) -> None:
        with self._lock:
            self._segments = ()
            self._generation += 1

    def to_list(self) -> List[Dict[str, Any]]:
        return [seg.to_dict() for seg in self._segments]

    def __len__(self) -> int:
        return len(self._segments)

    def __iter__(self) -> Iterator[CaptionSegment]:
        return iter(self._segments)
