"""Global admission control for in-flight queries.

One ConcurrencyGate is shared by every session in the process. It is
backpressure by rejection: callers are turned away immediately when the
gate is full, never queued.
"""
from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class ConcurrencyGate:
    """Bounded counter of running queries.

    Guarded by a threading.Lock so sessions driven from different event
    loops or worker threads can share one gate.
    """

    def __init__(self, limit: int = 3) -> None:
        if limit < 1:
            raise ValueError(f"Concurrency limit must be >= 1, got {limit}")
        self._limit = limit
        self._active = 0
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        with self._lock:
            return self._active

    def try_acquire(self) -> bool:
        """Take a slot if one is free. Never blocks."""
        with self._lock:
            if self._active >= self._limit:
                logger.warning(
                    "Concurrent query limit reached (%d/%d)",
                    self._active, self._limit,
                )
                return False
            self._active += 1
            return True

    def release(self) -> None:
        """Give a slot back. Extra releases are clamped at zero."""
        with self._lock:
            if self._active == 0:
                logger.warning("ConcurrencyGate.release() with no active queries")
                return
            self._active -= 1
