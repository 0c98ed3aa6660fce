"""
Caption Styles - named StyleConfig presets and the style preview frame.

Presets:
- default: white primary over a yellow secondary, 10% from the bottom
- large:   same colours, bigger text for small screens
- cinema:  white on white, low on the frame
- top:     captions near the top edge (for videos with burned-in lower thirds)
"""

from typing import Optional

import cv2
import numpy as np

from caption_renderer import CaptionRenderer, StyleConfig, ViewMode
from caption_segments import CaptionSegment

STYLE_PRESETS = {
    "default": StyleConfig(
        primary_size_px=15,
        secondary_size_px=15,
        primary_color="#ffffff",
        secondary_color="#facc15",
        vertical_position_percent=10,
    ),
    "large": StyleConfig(
        primary_size_px=22,
        secondary_size_px=24,
        primary_color="#ffffff",
        secondary_color="#facc15",
        vertical_position_percent=8,
    ),
    "cinema": StyleConfig(
        primary_size_px=14,
        secondary_size_px=16,
        primary_color="#ffffff",
        secondary_color="#f1f5f9",
        vertical_position_percent=5,
    ),
    "top": StyleConfig(
        primary_size_px=15,
        secondary_size_px=15,
        primary_color="#ffffff",
        secondary_color="#facc15",
        vertical_position_percent=80,
    ),
}

# Sample shown while the user tweaks the style
PREVIEW_SEGMENT = CaptionSegment(
    start_time=0.0,
    end_time=0.0,
    primary_text="This is a sample subtitle style preview text.",
    secondary_text="这是一个用于预览样式的中文示例字幕文本。",
)


def get_style(name: str) -> StyleConfig:
    """Return the named preset, falling back to ``default`` for unknown names."""
    return STYLE_PRESETS.get(name, STYLE_PRESETS["default"])


def render_preview_png(
    renderer: CaptionRenderer,
    style: StyleConfig,
    view_mode: ViewMode,
    frame: Optional[np.ndarray] = None,
    width: int = 1280,
    height: int = 720,
) -> bytes:
    """Draw the preview caption over ``frame`` (or a black canvas) as PNG bytes."""

    if frame is None:
        frame = np.zeros((height, width, 3), dtype=np.uint8)
    annotated = renderer.render(frame, PREVIEW_SEGMENT, style, view_mode)
    ok, encoded = cv2.imencode(".png", annotated)
    if not ok:
        raise IOError("Could not encode preview frame")
    return encoded.tobytes()
