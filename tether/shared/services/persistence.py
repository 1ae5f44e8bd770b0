"""Session persistence: remember the remote session id across restarts.

Storage layout:
    ~/.tether/session.json  (configurable via TetherConfig.session_file)

    {"version": 1, "session_id": "...", "saved_at": "<ISO8601>",
     "working_dir": "/path/to/project"}

Saves are debounced: a burst of save() calls within the debounce window
collapses into one write. flush() forces the pending write out, e.g. on
shutdown.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from tether.engine.errors import (
    SessionDirectoryMismatchError,
    SessionLoadError,
    SessionNotFoundError,
    SessionVersionMismatchError,
)
from tether.shared.services.durable_write import atomic_write_json

logger = logging.getLogger(__name__)

SESSION_FILE_VERSION = 1


class PersistableSession(Protocol):
    """What the manager reads from a session at write time."""
    session_id: str | None
    working_dir: str


@dataclass
class SessionSnapshot:
    """A persisted session record that passed validation."""
    session_id: str
    working_dir: str | None = None
    saved_at: str | None = None


def _same_dir(a: str, b: str) -> bool:
    return os.path.realpath(os.path.expanduser(a)) == os.path.realpath(
        os.path.expanduser(b)
    )


class PersistenceManager:
    """Debounced writer and validating reader for the session file."""

    def __init__(self, path: Path | str, debounce_seconds: float = 0.5) -> None:
        self._path = Path(path).expanduser()
        self._debounce = debounce_seconds
        self._pending: PersistableSession | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def path(self) -> Path:
        return self._path

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def save(self, session: PersistableSession) -> None:
        """Schedule a write of *session*'s current id and directory.

        The session is read when the write happens, not now, so the
        latest values win. Without a running event loop the write is
        immediate.
        """
        self._pending = session
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(self._debounce, self._write_pending)

    def flush(self) -> None:
        """Cancel any scheduled write and perform it now."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._write_pending()

    def _write_pending(self) -> None:
        self._timer = None
        session, self._pending = self._pending, None
        if session is None:
            return
        session_id = session.session_id
        if not session_id:
            logger.debug("Skipping session save: no session id yet")
            return
        data = {
            "version": SESSION_FILE_VERSION,
            "session_id": session_id,
            "saved_at": datetime.now(timezone.utc).isoformat(),
            "working_dir": session.working_dir,
        }
        try:
            atomic_write_json(self._path, data)
        except OSError as exc:
            logger.error("Failed to save session to %s: %s", self._path, exc)
            return
        logger.info("Session %s... saved to %s", session_id[:8], self._path)

    def load(self, working_dir: str) -> SessionSnapshot:
        """Read and validate the persisted session for *working_dir*.

        Raises SessionNotFoundError, SessionLoadError,
        SessionVersionMismatchError or SessionDirectoryMismatchError.
        """
        if not self._path.exists():
            raise SessionNotFoundError()
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise SessionLoadError(str(self._path), str(exc)) from exc
        if not isinstance(data, dict):
            raise SessionLoadError(str(self._path), "not a JSON object")

        version = data.get("version")
        if version != SESSION_FILE_VERSION:
            raise SessionVersionMismatchError(version, SESSION_FILE_VERSION)

        session_id = data.get("session_id")
        if not session_id:
            raise SessionNotFoundError("Saved session has no session id")

        saved_dir = data.get("working_dir")
        if saved_dir and not _same_dir(saved_dir, working_dir):
            raise SessionDirectoryMismatchError(saved_dir, working_dir)

        logger.info("Loaded session %s... from %s", str(session_id)[:8], self._path)
        return SessionSnapshot(
            session_id=str(session_id),
            working_dir=saved_dir,
            saved_at=data.get("saved_at"),
        )

    def clear(self) -> None:
        """Forget the persisted session (pending write included)."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending = None
        try:
            self._path.unlink()
        except FileNotFoundError:
            pass
