"""At-most-one producer per video identifier."""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Iterator

from engine.errors import InFlightConflict

logger = logging.getLogger(__name__)


class InFlightRegistry:
    """Set of identifiers with an active download/transcode.

    Callers that lose the race are never queued: ``try_acquire`` returns
    immediately and the caller is expected to tell its client to retry.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: set[str] = set()

    def try_acquire(self, video_id: str) -> bool:
        with self._lock:
            if video_id in self._active:
                return False
            self._active.add(video_id)
            return True

    def release(self, video_id: str) -> None:
        with self._lock:
            if video_id not in self._active:
                logger.warning("release of identifier that is not in flight video_id=%s", video_id)
                return
            self._active.discard(video_id)

    @contextmanager
    def hold(self, video_id: str) -> Iterator[None]:
        """Own production of ``video_id`` for the duration of the block.

        Raises:
            InFlightConflict: if another caller already owns the identifier.
        """
        if not self.try_acquire(video_id):
            raise InFlightConflict(f"video {video_id} is already being processed")
        try:
            yield
        finally:
            self.release(video_id)

    def in_flight(self, video_id: str) -> bool:
        with self._lock:
            return video_id in self._active

    def __len__(self) -> int:
        with self._lock:
            return len(self._active)
