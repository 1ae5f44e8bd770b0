"""Per-session undo checkpoints.

One checkpoint id is pushed for every user turn the provider echoes
back. Undo pops the newest; a failed rewind puts it back with
restore() so undo can be retried.
"""
from __future__ import annotations

import logging

logger = logging.getLogger(__name__)


class CheckpointStack:
    """LIFO stack of opaque provider checkpoint ids."""

    def __init__(self) -> None:
        self._ids: list[str] = []

    def push(self, checkpoint_id: str) -> None:
        self._ids.append(checkpoint_id)
        logger.debug("Checkpoint: user message %s...", checkpoint_id[:8])

    def pop(self) -> str | None:
        if not self._ids:
            return None
        return self._ids.pop()

    def restore(self, checkpoint_id: str) -> None:
        """Put a popped id back on top after a failed rewind."""
        self._ids.append(checkpoint_id)

    def peek(self) -> str | None:
        return self._ids[-1] if self._ids else None

    def clear(self) -> None:
        self._ids.clear()

    def __len__(self) -> int:
        return len(self._ids)

    def __bool__(self) -> bool:
        return bool(self._ids)
