"""Running-state observers.

Transports subscribe to learn when a session starts or stops running a
query (e.g. to show a typing indicator or a stop button). Listeners are
plain callables; a failing listener is logged and never breaks the
query path.
"""
from __future__ import annotations

import logging
from collections.abc import Callable

logger = logging.getLogger(__name__)

RunningListener = Callable[[bool], None]


class RunningListeners:
    """Subscription list for is-running toggles."""

    def __init__(self) -> None:
        self._listeners: list[RunningListener] = []

    def subscribe(self, listener: RunningListener) -> Callable[[], None]:
        """Register a listener. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            self.unsubscribe(listener)

        return _unsubscribe

    def unsubscribe(self, listener: RunningListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def notify(self, running: bool) -> None:
        for listener in list(self._listeners):
            try:
                listener(running)
            except Exception:
                logger.exception("Running listener %r failed", listener)

    def __len__(self) -> int:
        return len(self._listeners)
