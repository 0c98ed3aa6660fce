from __future__ import annotations

import logging
import threading
from typing import Optional, Tuple

from caption_errors import CapabilityError, EncodeError, ExportBusyError, ExportCancelled
from capture_graph import CaptureGraph
from export_cache import ExportCache, ExportCacheEntry, compute_fingerprint, source_identity
from export_encoder import ExportEncoder, ExportJob, ExportRequest, ExportStatus

logger = logging.getLogger(__name__)


class ExportManager:
    """Admits at most one active export and answers repeats from the cache.

    ``export`` runs a job on the calling thread. ``start`` prepares on the
    calling thread, so capability errors reach the caller, then records on a
    daemon thread.
    """

    def __init__(self, encoder: ExportEncoder, cache: ExportCache):
        self.encoder = encoder
        self.cache = cache
        self._lock = threading.Lock()
        self._job: Optional[ExportJob] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def current_job(self) -> Optional[ExportJob]:
        return self._job

    def is_busy(self) -> bool:
        job = self._job
        return job is not None and not job.status.is_terminal

    def fingerprint_for(self, request: ExportRequest) -> str:
        try:
            identity = source_identity(request.source_path)
        except OSError as e:
            raise CapabilityError(f"Source video is not readable: {request.source_path}") from e
        return compute_fingerprint(
            identity, request.segments, request.view_mode, request.style, request.format
        )

    def _admit(self, request: ExportRequest) -> Tuple[ExportJob, Optional[ExportCacheEntry]]:
        fingerprint = self.fingerprint_for(request)
        hit = self.cache.get(fingerprint)
        if hit is not None:
            job = ExportJob(
                fingerprint=fingerprint,
                format=request.format,
                status=ExportStatus.COMPLETED,
                progress_percent=100.0,
                eta_seconds=0,
                file_name=hit.suggested_file_name,
                cached=True,
            )
            return job, hit

        with self._lock:
            if self.is_busy():
                raise ExportBusyError("An export is already running; wait for it to finish")
            job = ExportJob(fingerprint=fingerprint, format=request.format)
            self._job = job
        return job, None

    def export(self, request: ExportRequest) -> ExportCacheEntry:
        """Run (or serve from cache) one export on the calling thread."""

        job, hit = self._admit(request)
        if hit is not None:
            return hit
        return self.encoder.run(request, job)

    def start(self, request: ExportRequest) -> ExportJob:
        """Prepare synchronously, then record in the background."""

        job, hit = self._admit(request)
        if hit is not None:
            return job

        graph = self.encoder.prepare(request, job)
        thread = threading.Thread(
            target=self._record, args=(request, job, graph), name="caption-export", daemon=True
        )
        self._thread = thread
        thread.start()
        return job

    def _record(self, request: ExportRequest, job: ExportJob, graph: CaptureGraph) -> None:
        try:
            self.encoder.record(request, job, graph)
        except ExportCancelled:
            pass  # CANCELLED already recorded on the job
        except EncodeError as e:
            logger.error(f"  [EXPORT] Background export failed: {e}")
        except Exception:
            logger.exception("  [EXPORT] Unexpected error in background export")

    def wait(self, timeout: Optional[float] = None) -> Optional[ExportJob]:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)
        return self._job

    def cancel(self) -> bool:
        if not self.is_busy():
            return False
        self.encoder.cancel()
        return True

    def artifact(self, fingerprint: Optional[str] = None) -> Optional[ExportCacheEntry]:
        """The cached artifact for ``fingerprint`` (default: the last completed job)."""

        if fingerprint is None:
            job = self._job
            if job is None or job.status != ExportStatus.COMPLETED:
                return None
            fingerprint = job.fingerprint
        return self.cache.get(fingerprint)

    def reset(self) -> None:
        """Source changed: stop any running export and drop the cached artifact."""

        self.cancel()
        self.cache.clear()
        with self._lock:
            if not self.is_busy():
                self._job = None
