from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

from caption_renderer import StyleConfig, ViewMode
from caption_segments import CaptionSegment

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportCacheEntry:
    fingerprint: str
    artifact_bytes: bytes
    suggested_file_name: str
    mime: str = "application/octet-stream"


def source_identity(path: str) -> Dict[str, Any]:
    """Identify a source file by absolute path, size and modification time."""

    stat = os.stat(path)
    return {
        "path": os.path.abspath(path),
        "size": stat.st_size,
        "mtime_ns": stat.st_mtime_ns,
    }


def compute_fingerprint(
    source: Any,
    segments: Sequence[CaptionSegment],
    view_mode: ViewMode,
    style: StyleConfig,
    export_format: str,
) -> str:
    """Deterministic key over every input that changes the exported bytes."""

    payload = {
        "source": source,
        "segments": [seg.to_dict() for seg in segments],
        "viewMode": ViewMode(view_mode).value,
        "style": style.to_dict(),
        "format": export_format,
    }
    encoded = json.dumps(payload, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


class ExportCache:
    """Holds the most recent export artifact; a new ``put`` evicts it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entry: Optional[ExportCacheEntry] = None

    def get(self, fingerprint: str) -> Optional[ExportCacheEntry]:
        with self._lock:
            entry = self._entry
        if entry is not None and entry.fingerprint == fingerprint:
            logger.info("  [CACHE] Hit for %s", fingerprint[:12])
            return entry
        return None

    def put(self, entry: ExportCacheEntry) -> None:
        with self._lock:
            self._entry = entry
        logger.info(
            "  [CACHE] Stored %s (%d bytes)", entry.suggested_file_name, len(entry.artifact_bytes)
        )

    def clear(self) -> None:
        with self._lock:
            self._entry = None

    def __len__(self) -> int:
        return 0 if self._entry is None else 1
