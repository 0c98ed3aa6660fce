"""
Flask web application for the bilingual caption burner.
Accepts a source video and its caption segments, answers live overlay lookups,
renders style previews, serves the caption file and runs burn-in exports.
"""

import io
import logging
import math
import os
import threading

import cv2
from flask import Flask, jsonify, request, send_file
from werkzeug.utils import secure_filename

import config
from caption_errors import CapabilityError, ExportBusyError, ParseError
from caption_renderer import CaptionRenderer, StyleConfig, ViewMode
from caption_segments import SegmentStore
from caption_srt import parse_srt, srt_filename_for, write_srt
from caption_styles import STYLE_PRESETS, get_style, render_preview_png
from capture_graph import EXPORT_FORMATS, CaptureGraphBuilder
from export_cache import ExportCache
from export_encoder import ExportEncoder, ExportRequest
from export_manager import ExportManager
from segment_locator import LocatorArena

logger = logging.getLogger(__name__)


def log_request_context(tag: str):
    logger.info(
        "[%s] %s %s content_length=%s, remote_addr=%s, files=%s",
        tag,
        request.method,
        request.path,
        request.content_length,
        request.remote_addr,
        list(request.files.keys()),
    )


app = Flask(__name__)

app.config['MAX_CONTENT_LENGTH'] = config.MAX_CONTENT_LENGTH
app.config['UPLOAD_FOLDER'] = config.UPLOAD_FOLDER

os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)

ALLOWED_VIDEO_EXTENSIONS = {'mp4', 'mov', 'avi', 'mkv', 'webm'}

# Process-wide state; gunicorn runs a single worker
segment_store = SegmentStore()
locator_arena = LocatorArena(segment_store)
caption_renderer = CaptionRenderer(config.LATIN_FONT_PATH, config.CJK_FONT_PATH)
export_cache = ExportCache()
export_manager = ExportManager(
    ExportEncoder(CaptureGraphBuilder(), caption_renderer, cache=export_cache),
    export_cache,
)

_source_lock = threading.Lock()
current_source = {'path': None, 'name': None}


def allowed_file(filename, allowed_extensions):
    """Check if file has an allowed extension."""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in allowed_extensions


def set_source(path, name):
    """Switch to a new source video and forget everything tied to the old one."""
    with _source_lock:
        current_source['path'] = path
        current_source['name'] = name
    segment_store.clear()
    locator_arena.reset_all()
    export_manager.reset()


def style_from_payload(data):
    """``style`` may be a preset name or an object of StyleConfig fields."""
    style = data.get('style')
    if style is None:
        return get_style('default')
    if isinstance(style, str):
        if style not in STYLE_PRESETS:
            raise ValueError(f"Unknown style preset '{style}'")
        return get_style(style)
    if isinstance(style, dict):
        return StyleConfig.from_dict(style)
    raise ValueError("style must be a preset name or an object")


def view_mode_from_payload(data):
    try:
        return ViewMode(data.get('viewMode', ViewMode.DUAL.value))
    except ValueError:
        raise ValueError(f"Unknown view mode '{data.get('viewMode')}'")


def read_source_frame(path, time_seconds):
    """Grab the frame at ``time_seconds`` from ``path`` (None if unavailable)."""
    cap = cv2.VideoCapture(path)
    try:
        if not cap.isOpened():
            return None
        cap.set(cv2.CAP_PROP_POS_MSEC, max(0.0, time_seconds) * 1000.0)
        ok, frame = cap.read()
        return frame if ok else None
    finally:
        cap.release()


@app.route('/')
def index():
    return jsonify({
        'message': 'Caption burner is running',
        'source': current_source['name'],
        'segments': len(segment_store),
        'formats': list(EXPORT_FORMATS),
        'styles': list(STYLE_PRESETS),
        'viewModes': [mode.value for mode in ViewMode],
    })


@app.route('/upload-video', methods=['POST'])
def upload_video():
    """Store a new source video; clears segments, playback sessions and the export cache."""
    log_request_context("UPLOAD_VIDEO")

    if 'video' not in request.files:
        logger.warning("[UPLOAD_VIDEO] No 'video' file in request")
        return jsonify({'error': 'No video file provided'}), 400

    file = request.files['video']
    if file.filename == '':
        return jsonify({'error': 'No file selected'}), 400

    if not allowed_file(file.filename, ALLOWED_VIDEO_EXTENSIONS):
        return jsonify({'error': 'Invalid file type. Please upload a video file.'}), 400

    try:
        filename = secure_filename(file.filename)
        save_path = os.path.join(app.config['UPLOAD_FOLDER'], filename)
        logger.info("[UPLOAD_VIDEO] Saving file as %s", save_path)
        file.save(save_path)
        set_source(save_path, file.filename)

        logger.info(
            "[UPLOAD_VIDEO] Using video source (%s), size ~%.2f MB",
            filename,
            os.path.getsize(save_path) / (1024 * 1024),
        )
        return jsonify({
            'success': True,
            'video_path': save_path,
            'video_name': file.filename,
        })

    except Exception as e:
        logger.exception("[UPLOAD_VIDEO] Error saving video")
        return jsonify({'error': f'Error saving video: {str(e)}'}), 500


@app.route('/api/segments', methods=['POST'])
def load_segments():
    """Replace the caption segments with a JSON list or an uploaded .srt file."""
    log_request_context("SEGMENTS")

    try:
        if 'srt' in request.files:
            text = request.files['srt'].read().decode('utf-8')
            raw = [seg.to_dict() for seg in parse_srt(text)]
        else:
            raw = request.get_json(silent=True)
            if raw is None:
                return jsonify({'error': 'Expected a JSON segment list or an srt file'}), 400
        segments = segment_store.replace(raw)
    except (ParseError, UnicodeDecodeError) as e:
        logger.warning(f"[SEGMENTS] Rejected segment input: {e}")
        return jsonify({'error': str(e)}), 400
    except Exception:
        logger.exception("[SEGMENTS] Error loading segments")
        return jsonify({'error': 'Error loading segments'}), 500

    return jsonify({
        'success': True,
        'generation': segment_store.generation,
        'count': len(segments),
        'segments': [seg.to_dict() for seg in segments],
    })


@app.route('/api/segments', methods=['GET'])
def get_segments():
    return jsonify({
        'generation': segment_store.generation,
        'segments': segment_store.to_list(),
    })


@app.route('/api/playback/<session_id>/active', methods=['GET'])
def active_segment(session_id):
    """Caption showing at ``?t=<seconds>`` for one playback session."""
    try:
        time_seconds = float(request.args['t'])
        if not math.isfinite(time_seconds):
            raise ValueError(time_seconds)
    except (KeyError, ValueError):
        return jsonify({'error': "Query parameter 't' (seconds) is required"}), 400

    segment = locator_arena.locate(session_id, time_seconds)
    return jsonify({
        'session': session_id,
        't': time_seconds,
        'segment': segment.to_dict() if segment is not None else None,
    })


@app.route('/api/playback/<session_id>/seek', methods=['POST'])
def seek_playback(session_id):
    locator_arena.seek(session_id)
    return jsonify({'success': True})


@app.route('/api/playback/<session_id>', methods=['DELETE'])
def close_playback(session_id):
    if not locator_arena.close(session_id):
        return jsonify({'error': 'Unknown playback session'}), 404
    return jsonify({'success': True})


@app.route('/api/preview', methods=['POST'])
def preview_style():
    """Render the sample caption with the requested style as a PNG."""
    data = request.get_json(silent=True) or {}
    try:
        style = style_from_payload(data)
        view_mode = view_mode_from_payload(data)
        frame = None
        if current_source['path'] and 't' in data:
            frame = read_source_frame(current_source['path'], float(data['t']))
        png = render_preview_png(caption_renderer, style, view_mode, frame=frame)
    except (ValueError, TypeError) as e:
        return jsonify({'error': str(e)}), 400
    except Exception:
        logger.exception("[PREVIEW] Error rendering preview")
        return jsonify({'error': 'Error rendering preview'}), 500

    return send_file(io.BytesIO(png), mimetype='image/png')


@app.route('/download-srt')
def download_srt():
    """Serve the normalized captions as a .srt attachment."""
    if not len(segment_store):
        return jsonify({'error': 'No caption segments loaded'}), 404

    return send_file(
        io.BytesIO(write_srt(segment_store.snapshot()).encode('utf-8')),
        mimetype='application/x-subrip',
        as_attachment=True,
        download_name=srt_filename_for(current_source['name']),
    )


@app.route('/api/export', methods=['POST'])
def start_export():
    """Start a burn-in export (202), or answer from the cache (200)."""
    log_request_context("EXPORT")

    source_path = current_source['path']
    if not source_path:
        return jsonify({'error': 'Upload a video first'}), 400

    data = request.get_json(silent=True) or {}
    try:
        export_format = data.get('format', 'mp4')
        if export_format not in EXPORT_FORMATS:
            raise ValueError(f"Unknown export format '{export_format}'")
        export_request = ExportRequest(
            source_path=source_path,
            segments=segment_store.snapshot(),
            style=style_from_payload(data),
            view_mode=view_mode_from_payload(data),
            format=export_format,
            source_name=current_source['name'],
        )
        job = export_manager.start(export_request)
    except ExportBusyError as e:
        return jsonify({'error': str(e)}), 409
    except CapabilityError as e:
        logger.warning(f"[EXPORT] Capability check failed: {e}")
        return jsonify({'error': str(e)}), 400
    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception:
        logger.exception("[EXPORT] Error starting export")
        return jsonify({'error': 'Error starting export'}), 500

    return jsonify(job.to_dict()), (200 if job.cached else 202)


@app.route('/api/export/status', methods=['GET'])
def export_status():
    job = export_manager.current_job
    if job is None:
        return jsonify({'status': 'idle'})
    return jsonify(job.to_dict())


@app.route('/api/export/cancel', methods=['POST'])
def cancel_export():
    if not export_manager.cancel():
        return jsonify({'error': 'No export is running'}), 409
    return jsonify({'success': True})


@app.route('/api/export/download', methods=['GET'])
def download_export():
    entry = export_manager.artifact(request.args.get('fingerprint'))
    if entry is None:
        return jsonify({'error': 'File not found'}), 404

    resp = send_file(
        io.BytesIO(entry.artifact_bytes),
        mimetype=entry.mime,
        as_attachment=True,
        download_name=entry.suggested_file_name,
    )
    resp.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    return resp


if __name__ == '__main__':
    port = int(os.environ.get("PORT", 5000))
    logger.info(f"Starting app on port {port}...")
    app.run(debug=True, host='0.0.0.0', port=port, use_reloader=False)
