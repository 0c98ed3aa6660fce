from __future__ import annotations

import logging
import math
import os
import unicodedata
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import cv2
import numpy as np
from PIL import Image, ImageColor, ImageDraw, ImageFont

from caption_segments import CaptionSegment

logger = logging.getLogger(__name__)

PIL_FONT_CACHE: Dict[Tuple[Optional[str], int], "ImageFont.FreeTypeFont"] = {}

# Layout constants, all relative to a 1280px wide frame
REFERENCE_WIDTH = 1280.0
SIZE_BOOST = 1.5  # Style sizes are tuned for the on-screen overlay; frames need bigger text
MAX_WIDTH_RATIO = 0.9
LINE_HEIGHT_RATIO = 1.35  # Wrapped lines
SINGLE_LINE_HEIGHT_RATIO = 1.3  # Auto-shrunk single line
LAYER_GAP_PX = 8.0
OUTLINE_RGBA = (0, 0, 0, 204)  # Black at 80% opacity


# --------------------------------------------------------------------------- #
# Data models
# --------------------------------------------------------------------------- #


class ViewMode(str, Enum):
    """Which caption layers are drawn."""

    DUAL = "dual"
    PRIMARY_ONLY = "primary-only"
    SECONDARY_ONLY = "secondary-only"
    OFF = "off"

    @property
    def shows_primary(self) -> bool:
        return self in (ViewMode.DUAL, ViewMode.PRIMARY_ONLY)

    @property
    def shows_secondary(self) -> bool:
        return self in (ViewMode.DUAL, ViewMode.SECONDARY_ONLY)


@dataclass(frozen=True)
class StyleConfig:
    """Caption look: sizes in overlay pixels, colours as CSS hex strings."""

    primary_size_px: float = 15  # Primary layer font size
    secondary_size_px: float = 15  # Secondary layer font size
    primary_color: str = "#ffffff"  # Primary layer fill
    secondary_color: str = "#facc15"  # Secondary layer fill
    vertical_position_percent: float = 10  # Anchor baseline, % of height from the bottom

    def __post_init__(self):
        for color in (self.primary_color, self.secondary_color):
            ImageColor.getrgb(color)  # raises ValueError on unknown colours
        for size in (self.primary_size_px, self.secondary_size_px):
            if not math.isfinite(size) or size <= 0:
                raise ValueError("Caption font sizes must be positive finite numbers")
        if not math.isfinite(self.vertical_position_percent) or not (
            0 <= self.vertical_position_percent <= 100
        ):
            raise ValueError("vertical_position_percent must be within 0-100")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StyleConfig":
        """Build from snake_case or camelCase keys; unknown keys are ignored."""

        aliases = {
            "primarySizePx": "primary_size_px",
            "secondarySizePx": "secondary_size_px",
            "primaryColor": "primary_color",
            "secondaryColor": "secondary_color",
            "verticalPositionPercent": "vertical_position_percent",
        }
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = aliases.get(key, key)
            if name not in cls.__dataclass_fields__:
                continue
            if name.endswith("_color"):
                kwargs[name] = str(value)
            else:
                try:
                    kwargs[name] = float(value)
                except (TypeError, ValueError):
                    raise ValueError(f"Style field '{key}' must be a number, got {value!r}")
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class TextLine:
    """One laid-out line, anchored at its horizontal centre and bottom edge."""

    text: str
    x: float
    y: float
    font_size: int
    color: str
    stroke_width: int
    layer: str  # "primary" or "secondary"
    font_path: Optional[str] = None


# --------------------------------------------------------------------------- #
# Helpers
# --------------------------------------------------------------------------- #


def is_dense_script(text: str) -> bool:
    """True when most visible characters are wide (CJK-style) glyphs.

    Dense scripts have no word spaces and must never be wrapped mid-word.
    """

    visible = [c for c in text if not c.isspace()]
    if not visible:
        return False
    wide = sum(1 for c in visible if unicodedata.east_asian_width(c) in ("W", "F"))
    return wide * 2 > len(visible)


def get_pil_font(font_path: Optional[str], font_size: int) -> "ImageFont.FreeTypeFont":
    """Load and cache a PIL font; missing paths fall back to the bundled font."""

    cache_key = (font_path, font_size)
    font = PIL_FONT_CACHE.get(cache_key)
    if font is None:
        if font_path and os.path.exists(font_path):
            font = ImageFont.truetype(font_path, font_size)
        else:
            if font_path:
                logger.warning(f"  [RENDER] Font not found: {font_path}, using the default font")
            font = ImageFont.load_default(size=font_size)
        PIL_FONT_CACHE[cache_key] = font
    return font


def stroke_width_for(font_size: float, font_scale: float) -> int:
    """Outline thickness grows with the font size and the frame width."""
    return max(1, int(round(3.0 * font_scale * (font_size / 20.0))))


# --------------------------------------------------------------------------- #
# Renderer
# --------------------------------------------------------------------------- #


class CaptionRenderer:
    """Lay out and draw the two caption layers onto a frame.

    Layers are bottom-anchored at ``vertical_position_percent`` and stacked
    upward, secondary first. Space-delimited text is greedily word-wrapped;
    dense-script text stays on one line and shrinks to fit instead.
    """

    def __init__(self, latin_font_path: Optional[str] = None, cjk_font_path: Optional[str] = None):
        self.latin_font_path = latin_font_path
        self.cjk_font_path = cjk_font_path

    def _font_path_for(self, text: str) -> Optional[str]:
        return self.cjk_font_path if is_dense_script(text) else self.latin_font_path

    def measure(self, text: str, font_size: int, font_path: Optional[str] = None) -> float:
        return float(get_pil_font(font_path, font_size).getlength(text))

    def wrap_lines(
        self, text: str, font_size: int, max_width: float, font_path: Optional[str] = None
    ) -> List[str]:
        """Greedy word wrap; a single over-long word still gets its own line."""

        words = text.split()
        if not words:
            return []
        lines: List[str] = []
        line = words[0]
        for word in words[1:]:
            candidate = f"{line} {word}"
            if self.measure(candidate, font_size, font_path) > max_width:
                lines.append(line)
                line = word
            else:
                line = candidate
        lines.append(line)
        return lines

    def fit_single_line(
        self, text: str, font_size: int, max_width: float, font_path: Optional[str] = None
    ) -> int:
        """Return the font size at which ``text`` fits ``max_width`` on one line."""

        width = self.measure(text, font_size, font_path)
        if width <= max_width or width <= 0:
            return font_size
        scale_factor = max_width / width
        return max(1, int(math.floor(font_size * scale_factor)))

    def _layout_layer(
        self,
        text: str,
        layer: str,
        color: str,
        base_size: float,
        bottom_y: float,
        center_x: float,
        max_width: float,
        font_scale: float,
    ) -> Tuple[List[TextLine], float]:
        """Lay out one layer ending at ``bottom_y``; return lines and height used."""

        font_path = self._font_path_for(text)
        font_size = max(1, int(round(base_size)))
        text = text.strip()
        if not text:
            return [], 0.0

        if is_dense_script(text):
            fitted = self.fit_single_line(text, font_size, max_width, font_path)
            line = TextLine(
                text=text,
                x=center_x,
                y=bottom_y,
                font_size=fitted,
                color=color,
                stroke_width=stroke_width_for(fitted, font_scale),
                layer=layer,
                font_path=font_path,
            )
            return [line], fitted * SINGLE_LINE_HEIGHT_RATIO

        wrapped = self.wrap_lines(text, font_size, max_width, font_path)
        line_height = font_size * LINE_HEIGHT_RATIO
        stroke = stroke_width_for(font_size, font_scale)
        lines = [
            TextLine(
                text=content,
                x=center_x,
                y=bottom_y - (len(wrapped) - 1 - idx) * line_height,
                font_size=font_size,
                color=color,
                stroke_width=stroke,
                layer=layer,
                font_path=font_path,
            )
            for idx, content in enumerate(wrapped)
        ]
        return lines, len(wrapped) * line_height

    def layout(
        self,
        segment: Optional[CaptionSegment],
        style: StyleConfig,
        view_mode: ViewMode,
        frame_width: int,
        frame_height: int,
    ) -> List[TextLine]:
        """Compute every text line to draw for ``segment`` on a frame."""

        if segment is None or view_mode == ViewMode.OFF:
            return []

        font_scale = frame_width / REFERENCE_WIDTH
        center_x = frame_width / 2.0
        max_width = frame_width * MAX_WIDTH_RATIO
        bottom_y = frame_height * (1.0 - style.vertical_position_percent / 100.0)

        lines: List[TextLine] = []
        if view_mode.shows_secondary:
            secondary, used = self._layout_layer(
                segment.secondary_text,
                "secondary",
                style.secondary_color,
                style.secondary_size_px * font_scale * SIZE_BOOST,
                bottom_y,
                center_x,
                max_width,
                font_scale,
            )
            lines.extend(secondary)
            bottom_y -= used

        if view_mode.shows_primary:
            if view_mode == ViewMode.DUAL:
                bottom_y -= LAYER_GAP_PX * font_scale
            primary, _ = self._layout_layer(
                segment.primary_text,
                "primary",
                style.primary_color,
                style.primary_size_px * font_scale * SIZE_BOOST,
                bottom_y,
                center_x,
                max_width,
                font_scale,
            )
            lines.extend(primary)
        return lines

    def render(
        self,
        frame: np.ndarray,
        segment: Optional[CaptionSegment],
        style: StyleConfig,
        view_mode: ViewMode,
    ) -> np.ndarray:
        """Return a copy of the BGR ``frame`` with the caption burned in."""

        height, width = frame.shape[:2]
        lines = self.layout(segment, style, view_mode, width, height)
        if not lines:
            return frame

        base = Image.fromarray(cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)).convert("RGBA")
        overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        for line in lines:
            draw.text(
                (line.x, line.y),
                line.text,
                font=get_pil_font(line.font_path, line.font_size),
                fill=line.color,
                anchor="md",
                stroke_width=line.stroke_width,
                stroke_fill=OUTLINE_RGBA,
            )
        composed = Image.alpha_composite(base, overlay).convert("RGB")
        return cv2.cvtColor(np.array(composed), cv2.COLOR_RGB2BGR)
