from __future__ import annotations

import logging
import threading
from typing import Dict, Hashable, Optional, Sequence

from caption_segments import CaptionSegment, SegmentStore

logger = logging.getLogger(__name__)


class ActiveSegmentLocator:
    """Find the caption active at a playback position.

    Keeps a cursor at the last returned index so that monotonic playback costs
    O(1) per query. A backward seek past the cursor falls back to a scan from
    the start of the list. Call :meth:`reset` on every explicit seek or source
    change.
    """

    def __init__(self, segments: Sequence[CaptionSegment] = ()):
        self._lock = threading.RLock()
        self._segments: Sequence[CaptionSegment] = segments
        self._cursor = -1
        self._active: Optional[CaptionSegment] = None

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def segments(self) -> Sequence[CaptionSegment]:
        return self._segments

    def reset(self) -> None:
        with self._lock:
            self._cursor = -1
            self._active = None

    def rebind(self, segments: Sequence[CaptionSegment]) -> None:
        """Point at a new segment generation and forget the cursor."""
        with self._lock:
            self._segments = segments
            self.reset()

    def locate(self, time: float) -> Optional[CaptionSegment]:
        # Cursor and segment list must come from the same generation
        with self._lock:
            return self._locate(time)

    def _locate(self, time: float) -> Optional[CaptionSegment]:
        segments = self._segments

        # Cursor may be stale if the list was swapped underneath us
        if self._cursor >= len(segments):
            self.reset()

        active = self._active
        if active is not None and active.contains(time):
            return active

        start = max(0, self._cursor)
        found = -1
        last_started = -1

        for idx in range(start, len(segments)):
            seg = segments[idx]
            if seg.start_time > time:
                break
            last_started = idx
            if seg.contains(time):
                found = idx
                break

        # Backward seek: only an earlier segment can contain a time before the cursor's start
        if found < 0 and start > 0 and time < segments[start].start_time:
            for idx in range(start):
                seg = segments[idx]
                if seg.start_time > time:
                    break
                last_started = idx
                if seg.contains(time):
                    found = idx
                    break

        if found >= 0:
            self._cursor = found
            self._active = segments[found]
        else:
            # Park the cursor on the latest segment that has started so gaps stay cheap
            if last_started >= 0:
                self._cursor = last_started
            elif start > 0 and time < segments[start].start_time:
                self._cursor = -1
            self._active = None
        return self._active


class LocatorArena:
    """One locator per playback session, all reading the same SegmentStore.

    Locators are rebound lazily when the store moves to a new generation, so a
    session never trusts a cursor into a replaced list.
    """

    def __init__(self, store: SegmentStore):
        self._store = store
        self._lock = threading.Lock()
        self._sessions: Dict[Hashable, ActiveSegmentLocator] = {}
        self._generations: Dict[Hashable, int] = {}

    def _locator(self, session_id: Hashable) -> ActiveSegmentLocator:
        with self._lock:
            locator = self._sessions.get(session_id)
            generation = self._store.generation
            if locator is None:
                locator = ActiveSegmentLocator(self._store.snapshot())
                self._sessions[session_id] = locator
                self._generations[session_id] = generation
                logger.info("  [PLAYBACK] Opened session %s", session_id)
            elif self._generations[session_id] != generation:
                locator.rebind(self._store.snapshot())
                self._generations[session_id] = generation
            return locator

    def locate(self, session_id: Hashable, time: float) -> Optional[CaptionSegment]:
        return self._locator(session_id).locate(time)

    def seek(self, session_id: Hashable) -> None:
        self._locator(session_id).reset()

    def close(self, session_id: Hashable) -> bool:
        with self._lock:
            self._generations.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None

    def reset_all(self) -> None:
        """Source changed: forget every cursor."""
        with self._lock:
            for locator in self._sessions.values():
                locator.reset()

    def __len__(self) -> int:
        return len(self._sessions)
