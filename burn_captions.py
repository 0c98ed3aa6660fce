"""
Command-line entry point: burn bilingual captions into a video.

    burn-captions --video talk.mp4 --segments talk.json --format webm --srt talk.srt
    burn-captions --demo
"""

import argparse
import json
import os
import sys
from typing import List, Optional, Tuple

import cv2
import numpy as np

import config
from caption_errors import CaptionError, ExportCancelled
from caption_renderer import CaptionRenderer, StyleConfig, ViewMode
from caption_segments import normalize_segments, parse_segments_json
from caption_srt import write_srt
from caption_styles import STYLE_PRESETS, get_style
from capture_graph import EXPORT_FORMATS, CaptureGraphBuilder
from export_cache import ExportCache
from export_encoder import ExportEncoder, ExportJob, ExportRequest, format_eta
from export_manager import ExportManager


def print_progress(job: ExportJob) -> None:
    sys.stdout.write(
        f"\r[export] {job.progress_percent:5.1f}%  eta {format_eta(job.eta_seconds):<12}"
    )
    sys.stdout.flush()


def build_manager(show_progress: bool = True) -> ExportManager:
    cache = ExportCache()
    encoder = ExportEncoder(
        CaptureGraphBuilder(),
        CaptionRenderer(config.LATIN_FONT_PATH, config.CJK_FONT_PATH),
        cache=cache,
        progress_callback=print_progress if show_progress else None,
    )
    return ExportManager(encoder, cache)


def load_style(name_or_path: str) -> StyleConfig:
    """A preset name, or a JSON file with StyleConfig fields."""

    if name_or_path in STYLE_PRESETS or not os.path.exists(name_or_path):
        return get_style(name_or_path)
    with open(name_or_path, "r", encoding="utf-8") as f:
        return StyleConfig.from_dict(json.load(f))


def run_demo(output_path: str = "demo_output.mp4") -> None:
    """Burn a handful of captions into a generated clip for smoke testing."""

    base_video_path = "demo_base.mp4"

    def create_dummy_video(
        path: str,
        duration: float = 6.0,
        fps: int = 30,
        resolution: Tuple[int, int] = (720, 1280),
    ) -> None:
        h, w = resolution
        total_frames = int(duration * fps)
        writer = cv2.VideoWriter(path, cv2.VideoWriter_fourcc(*"mp4v"), fps, (w, h))
        for idx in range(total_frames):
            hue = int((idx / total_frames) * 180) % 180
            hsv = np.zeros((h, w, 3), dtype=np.uint8)
            hsv[..., 0] = hue
            hsv[..., 1] = 160
            hsv[..., 2] = 120
            writer.write(cv2.cvtColor(hsv, cv2.COLOR_HSV2BGR))
        writer.release()

    create_dummy_video(base_video_path)
    segments = normalize_segments(
        parse_segments_json(
            json.dumps(
                [
                    {"startTime": 0.2, "endTime": 2.4, "primaryText": "Welcome to the demo.",
                     "secondaryText": "欢迎观看演示。"},
                    {"startTime": 2.0, "endTime": 4.0,
                     "primaryText": "Overlapping captions are trimmed so only one shows at a time.",
                     "secondaryText": "重叠的字幕会被裁剪，因此同一时间只显示一条。"},
                    {"startTime": 4.5, "endTime": 4.5, "primaryText": "Zero-length spans get stretched.",
                     "secondaryText": "零长度的字幕会被拉长。"},
                ]
            )
        )
    )
    request = ExportRequest(
        source_path=base_video_path,
        segments=segments,
        style=get_style("default"),
        view_mode=ViewMode.DUAL,
        format="mp4",
    )
    artifact = build_manager().export(request)
    with open(output_path, "wb") as f:
        f.write(artifact.artifact_bytes)
    print(f"\n[info] Demo render written to {output_path}")


def parse_cli_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Configure and parse command line arguments."""

    parser = argparse.ArgumentParser(
        description="Burn bilingual captions into a video."
    )
    parser.add_argument("--video", help="Path to the source video file.")
    parser.add_argument("--segments", help="JSON file with the caption segment list.")
    parser.add_argument(
        "--output",
        help="Destination for the rendered video (default: <video stem>_subs.<format>).",
    )
    parser.add_argument(
        "--format", default="mp4", choices=EXPORT_FORMATS, help="Container to export."
    )
    parser.add_argument(
        "--view-mode",
        default=ViewMode.DUAL.value,
        choices=[mode.value for mode in ViewMode],
        help="Which caption layers to burn in.",
    )
    parser.add_argument(
        "--style",
        default="default",
        help=f"Style preset ({', '.join(STYLE_PRESETS)}) or a JSON file of style fields.",
    )
    parser.add_argument("--srt", help="Also write the normalized captions to this .srt file.")
    parser.add_argument(
        "--no-burn", action="store_true", help="Only normalize and write the caption file."
    )
    parser.add_argument(
        "--demo",
        action="store_true",
        help="Run a self contained demo showcasing the pipeline.",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_cli_args(argv)

    if args.demo:
        run_demo()
        return

    if not args.segments:
        raise SystemExit("Please provide --segments or use --demo.")
    if not args.video and not args.no_burn:
        raise SystemExit("Please provide --video (or --no-burn to only write captions).")

    try:
        with open(args.segments, "r", encoding="utf-8") as f:
            segments = normalize_segments(parse_segments_json(f.read()))
        style = load_style(args.style)
    except (OSError, ValueError) as e:
        raise SystemExit(f"[error] Could not load input: {e}")

    print(f"[info] Loaded {len(segments)} caption segments")

    if args.srt:
        with open(args.srt, "w", encoding="utf-8") as f:
            f.write(write_srt(segments))
        print(f"[info] Caption file written to {args.srt}")

    if args.no_burn:
        return

    request = ExportRequest(
        source_path=args.video,
        segments=segments,
        style=style,
        view_mode=ViewMode(args.view_mode),
        format=args.format,
    )
    output_path = args.output or os.path.join(
        os.path.dirname(args.video), request.suggested_file_name
    )

    try:
        artifact = build_manager().export(request)
    except ExportCancelled:
        raise SystemExit("\n[info] Export cancelled.")
    except CaptionError as e:
        raise SystemExit(f"\n[error] Export failed: {e}")

    with open(output_path, "wb") as f:
        f.write(artifact.artifact_bytes)
    print(f"\n[info] Render completed successfully. Output written to {output_path}")


if __name__ == "__main__":
    main()
