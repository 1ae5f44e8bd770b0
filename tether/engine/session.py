"""One logical agent conversation for a chat context.

AgentSession holds everything that outlives a single query: the remote
session id, working directory, model tier, modes, usage totals, undo
checkpoints, the pending-message queue and the last error. Queries are
run by a QueryOrchestrator bound to the session.

The caller drives the session:

    cleanup = session.start_processing()
    try:
        text = await session.send_message(prompt, QueryContext(callback))
    finally:
        cleanup()

stop() may be called from another task at any time. Before the query
reaches the provider it cancels the pending query; afterwards it aborts
the provider stream.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Literal

from .checkpoints import CheckpointStack
from .concurrency import ConcurrencyGate
from .config import TetherConfig
from .errors import (
    NoActiveSessionError,
    NoCheckpointsError,
    SessionBusyError,
)
from .lifecycle import QueryState, validate_transition
from .models import (
    MODEL_PRICING,
    CostEstimate,
    ModelTier,
    PendingMessage,
    ProviderId,
    TimeoutResponse,
    TokenUsage,
    UsageTotals,
)
from .observers import RunningListeners
from .orchestrator import QueryContext, QueryOrchestrator, SafetyPolicy
from .providers.base import AbortToken, Provider, ProviderQuery
from .providers.registry import create_provider, parse_provider_id
from tether.shared.services.command_policy import CommandPolicy
from tether.shared.services.persistence import PersistenceManager, SessionSnapshot

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ProviderId, TetherConfig], Provider]


class AgentSession:
    """Session state plus the query entry point."""

    def __init__(
        self,
        config: TetherConfig | None = None,
        *,
        provider: Provider | None = None,
        gate: ConcurrencyGate | None = None,
        persistence: PersistenceManager | None = None,
        safety: SafetyPolicy | None = None,
        provider_factory: ProviderFactory = create_provider,
    ) -> None:
        self.config = config or TetherConfig.from_env()
        self._provider_factory = provider_factory
        if provider is None:
            provider = provider_factory(
                parse_provider_id(self.config.provider), self.config
            )
        self.provider: Provider = provider
        self.gate = gate or ConcurrencyGate(self.config.max_concurrent_queries)
        self.persistence = persistence or PersistenceManager(
            self.config.session_file, self.config.save_debounce_seconds
        )
        self._owns_safety = safety is None
        self._working_dir = self.config.working_dir
        self._safety: SafetyPolicy = safety or self._default_safety()
        self._orchestrator = QueryOrchestrator(self, self.config, self._safety)
        self.running_listeners = RunningListeners()

        # Conversation
        self.session_id: str | None = None
        self.model: ModelTier = ModelTier.FAST
        self.plan_mode = False
        self.force_thinking_tokens: int | None = None
        self.usage = UsageTotals()
        self.last_usage: TokenUsage | None = None
        self.checkpoints = CheckpointStack()
        self.query_instance: ProviderQuery | None = None
        self._handoff_context: str | None = None
        self._pending: list[PendingMessage] = []

        # Status
        self.last_user_message: str | None = None
        self.last_bot_response: str | None = None
        self.last_error: str | None = None
        self.last_error_at: datetime | None = None
        self.last_activity_at: datetime | None = None
        self.current_tool: str | None = None
        self.query_started_at: datetime | None = None

        # Query control
        self.query_state = QueryState.IDLE
        self.stop_requested = False
        self.timeout_response = TimeoutResponse.NONE
        self._abort_token: AbortToken | None = None
        self._processing = False
        self._interrupted = False

    def _default_safety(self) -> CommandPolicy:
        return CommandPolicy(self._working_dir, self.config.allowed_paths)

    # ── Properties ──

    @property
    def working_dir(self) -> str:
        return self._working_dir

    @property
    def provider_id(self) -> str:
        return self.provider.name

    @property
    def is_active(self) -> bool:
        return self.session_id is not None

    @property
    def is_running(self) -> bool:
        return self._processing or self.query_state != QueryState.IDLE

    @property
    def can_undo(self) -> bool:
        return (
            self.query_instance is not None
            and self.query_instance.supports_rewind
            and bool(self.checkpoints)
        )

    # ── Query lifecycle ──

    def transition(self, target: QueryState) -> None:
        validate_transition(self.query_state, target)
        logger.debug("Query state: %s -> %s", self.query_state.value, target.value)
        self.query_state = target

    def begin_query(self, abort_token: AbortToken) -> None:
        self._abort_token = abort_token
        self.stop_requested = False
        self.timeout_response = TimeoutResponse.NONE
        self.current_tool = None
        self.query_started_at = datetime.now()

    def end_query(self) -> None:
        self._abort_token = None
        self.current_tool = None
        self.query_started_at = None

    def start_processing(self) -> Callable[[], None]:
        """Mark that a message is being prepared. Returns the cleanup callable."""
        self._processing = True
        if self.query_state == QueryState.IDLE:
            self.transition(QueryState.PROCESSING)

        def _cleanup() -> None:
            self._processing = False
            if self.query_state == QueryState.PROCESSING:
                self.transition(QueryState.IDLE)

        return _cleanup

    async def send_message(self, message: str, context: QueryContext) -> str:
        """Run *message* through the provider. See QueryOrchestrator."""
        return await self._orchestrator.send_message(message, context)

    def stop(self) -> Literal["stopped", "pending"] | None:
        """Abort the running query, or cancel one that has not started.

        Returns "stopped" if a provider stream was aborted, "pending"
        if the query will be cancelled before it starts, None if
        nothing was running.
        """
        if self.query_state == QueryState.RUNNING and self._abort_token is not None:
            self.stop_requested = True
            self._abort_token.abort()
            logger.info("Stop requested - aborting current query")
            return "stopped"
        if self.is_running:
            self.stop_requested = True
            logger.info("Stop requested - will cancel before query starts")
            return "pending"
        return None

    def mark_interrupt(self) -> None:
        """Flag the next stop as caused by a new message pre-empting this one."""
        self._interrupted = True

    def peek_interrupt_flag(self) -> bool:
        return self._interrupted

    def consume_interrupt_flag(self) -> bool:
        """Return and reset the interrupt flag (clearing the stop flag too)."""
        was = self._interrupted
        self._interrupted = False
        if was:
            self.stop_requested = False
        return was

    def clear_stop_requested(self) -> None:
        self.stop_requested = False

    def set_timeout_response(self, response: TimeoutResponse | str) -> None:
        """Answer a timeout_check prompt ("continue" or "abort")."""
        self.timeout_response = TimeoutResponse(response)

    # ── Session management ──

    def kill(self) -> None:
        """Forget the remote session. The model choice survives."""
        self.session_id = None
        self.last_activity_at = None
        self.usage.reset()
        self.plan_mode = False
        self.force_thinking_tokens = None
        self.query_instance = None
        self.checkpoints.clear()
        logger.info("Session cleared")

    def set_working_dir(self, path: str) -> None:
        """Change the working directory. Clears the session id."""
        self._working_dir = path
        self.session_id = None
        if self._owns_safety:
            self._safety = self._default_safety()
            self._orchestrator = QueryOrchestrator(self, self.config, self._safety)
        logger.info("Working directory changed to: %s", path)

    def set_model(self, model: ModelTier | str) -> ModelTier:
        self.model = model if isinstance(model, ModelTier) else ModelTier.parse(model)
        return self.model

    def set_provider(self, provider_id: ProviderId | str) -> tuple[bool, str]:
        """Switch backends. Refused while running or if already selected."""
        pid = parse_provider_id(provider_id)
        if self.is_running:
            return False, "Session is running. Stop it before switching provider."
        if self.provider.name == pid.value:
            return False, f"Already using provider: {pid.value}"
        self.kill()
        self.provider = self._provider_factory(pid, self.config)
        return True, (
            f"Switched provider to {pid.value}. "
            "Session cleared; next message starts fresh."
        )

    def resume_last(self) -> SessionSnapshot:
        """Restore the persisted session id for the current working dir.

        Raises a SessionPersistenceError subclass without touching the
        session when the saved record is missing or does not apply.
        """
        if self.is_running:
            raise SessionBusyError()
        snapshot = self.persistence.load(self._working_dir)
        self.session_id = snapshot.session_id
        self.last_activity_at = datetime.now()
        logger.info("Resumed session %s...", snapshot.session_id[:8])
        return snapshot

    def flush(self) -> None:
        """Write any pending persistence save now."""
        self.persistence.flush()

    # ── Undo ──

    async def undo(self) -> str:
        """Rewind files to the newest checkpoint.

        Raises NoActiveSessionError, NoCheckpointsError or a RewindError.
        The checkpoint is kept on any failure so undo can be retried.
        """
        if self.query_instance is None:
            raise NoActiveSessionError()
        target = self.checkpoints.pop()
        if target is None:
            raise NoCheckpointsError()
        try:
            await self.query_instance.rewind_files(target)
        except Exception:
            self.checkpoints.restore(target)
            raise
        remaining = len(self.checkpoints)
        plural = "" if remaining == 1 else "s"
        return (
            f"Reverted file changes to checkpoint {target[:8]}...\n"
            f"{remaining} checkpoint{plural} remaining"
        )

    # ── Handoff and pending messages ──

    def set_handoff_context(self, context: str) -> None:
        self._handoff_context = context

    def consume_handoff_context(self) -> str | None:
        context, self._handoff_context = self._handoff_context, None
        return context

    def add_pending_message(self, text: str) -> str:
        message = PendingMessage(text=text)
        self._pending.append(message)
        return message.id

    def pending_messages(self) -> list[PendingMessage]:
        return list(self._pending)

    def remove_pending_message(self, message_id: str) -> str | None:
        for index, message in enumerate(self._pending):
            if message.id == message_id:
                del self._pending[index]
                return message.text
        return None

    def clear_pending_messages(self) -> None:
        self._pending.clear()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # ── Usage ──

    def estimate_cost(self) -> CostEstimate:
        input_rate, output_rate = MODEL_PRICING[self.model]
        return CostEstimate(
            input_cost=self.usage.input_tokens / 1_000_000 * input_rate,
            output_cost=self.usage.output_tokens / 1_000_000 * output_rate,
        )
