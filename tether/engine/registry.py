"""Per-conversation sessions sharing one concurrency gate."""
from __future__ import annotations

import logging
from collections.abc import Hashable
from pathlib import Path

from .concurrency import ConcurrencyGate
from .config import TetherConfig
from .providers.registry import ProviderRegistry
from .session import AgentSession
from tether.shared.services.persistence import PersistenceManager

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Creates and tracks one AgentSession per conversation key.

    Every session shares the registry's ConcurrencyGate, so the global
    query limit holds across conversations. Each key gets its own
    session file next to the configured one.
    """

    def __init__(self, config: TetherConfig | None = None) -> None:
        self._config = config or TetherConfig.from_env()
        self._gate = ConcurrencyGate(self._config.max_concurrent_queries)
        self._providers = ProviderRegistry(self._config)
        self._sessions: dict[Hashable, AgentSession] = {}

    @property
    def gate(self) -> ConcurrencyGate:
        return self._gate

    @property
    def active_query_count(self) -> int:
        return self._gate.active

    def _session_file(self, key: Hashable) -> Path:
        base = Path(self._config.session_file).expanduser()
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in str(key))
        return base.with_name(f"{base.stem}-{safe}{base.suffix}")

    def get(self, key: Hashable) -> AgentSession:
        """Return the session for *key*, creating it on first use."""
        session = self._sessions.get(key)
        if session is None:
            session = AgentSession(
                self._config,
                provider=self._providers.get(self._config.provider),
                gate=self._gate,
                persistence=PersistenceManager(
                    self._session_file(key), self._config.save_debounce_seconds
                ),
                provider_factory=lambda pid, _config: self._providers.get(pid),
            )
            self._sessions[key] = session
            logger.info("Session created for conversation %s", key)
        return session

    def __contains__(self, key: Hashable) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def remove(self, key: Hashable) -> AgentSession | None:
        session = self._sessions.pop(key, None)
        if session is not None:
            session.flush()
        return session

    def interrupt_all(self) -> int:
        """Stop every running session as a new-message interrupt."""
        stopped = 0
        for key, session in self._sessions.items():
            if session.is_running:
                session.mark_interrupt()
                if session.stop() is not None:
                    stopped += 1
                    logger.info("Interrupted session for conversation %s", key)
        return stopped

    def flush_all(self) -> None:
        """Write pending session saves (call on shutdown)."""
        for session in self._sessions.values():
            session.flush()

    async def shutdown(self) -> None:
        self.flush_all()
        await self._providers.shutdown_all()
