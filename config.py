"""
Configuration for the bilingual caption burner.

Every setting can be overridden through the environment (or a ``.env`` file
next to the process working directory).
"""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# =============================================================================
# External tools
# =============================================================================

FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")

# =============================================================================
# Export settings
# =============================================================================

CAPTURE_FPS = int(os.getenv("CAPTURE_FPS", "30"))
VIDEO_BITRATE = int(os.getenv("VIDEO_BITRATE", "15000000"))  # bits per second
AUDIO_BITRATE = int(os.getenv("AUDIO_BITRATE", "128000"))  # bits per second
KEYFRAME_INTERVAL_SECONDS = float(os.getenv("KEYFRAME_INTERVAL_SECONDS", "1.0"))

# Exports are clamped to this bounding box (aspect ratio preserved)
MAX_EXPORT_WIDTH = int(os.getenv("MAX_EXPORT_WIDTH", "1920"))
MAX_EXPORT_HEIGHT = int(os.getenv("MAX_EXPORT_HEIGHT", "1080"))

# Recording stops once the source clock reaches duration - epsilon
END_EPSILON_SECONDS = float(os.getenv("END_EPSILON_SECONDS", "0.1"))

# =============================================================================
# Fonts
# =============================================================================

# Wrapping layer (space-delimited scripts) and non-wrapping layer (dense scripts).
# Unset or missing paths fall back to Pillow's bundled font.
LATIN_FONT_PATH = os.getenv("LATIN_FONT_PATH") or None
CJK_FONT_PATH = os.getenv("CJK_FONT_PATH") or None

# =============================================================================
# Paths
# =============================================================================

PROJECT_ROOT = Path(__file__).parent.resolve()
UPLOAD_FOLDER = os.getenv("UPLOAD_FOLDER", "uploads")
MAX_CONTENT_LENGTH = int(os.getenv("MAX_CONTENT_LENGTH", str(2 * 1024 * 1024 * 1024)))

# =============================================================================
# Logging
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - [%(levelname)s] - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)


def print_config():
    """Print current configuration for debugging."""
    print(f"""
Caption Burner Configuration
============================
ffmpeg: {FFMPEG_BIN} / {FFPROBE_BIN}
Capture: {CAPTURE_FPS} fps, video {VIDEO_BITRATE} bps, audio {AUDIO_BITRATE} bps
Max export size: {MAX_EXPORT_WIDTH}x{MAX_EXPORT_HEIGHT}
Fonts: latin={LATIN_FONT_PATH or 'default'} cjk={CJK_FONT_PATH or 'default'}
Uploads: {UPLOAD_FOLDER}
Log Level: {LOG_LEVEL}
""")


if __name__ == "__main__":
    print_config()
