"""Drives one streaming agent query for a session.

A query runs through:

    PROCESSING  thinking budget, model, prompt decoration, cancel
                check, admission through the shared ConcurrencyGate
    RUNNING     consume the provider's StreamEvents in order
    COMPLETED / ABORTED / ASK_USER_PENDING / FAILED, then IDLE

While RUNNING, each event is handled in turn:

- the session's stop flag ends consumption;
- long queries escalate to the user every ``query_timeout_seconds``
  with a ``timeout_check`` status. The answer ("continue" / "abort")
  arrives through AgentSession.set_timeout_response() and is polled;
  no answer means continue;
- the first remote session id is captured and persisted (debounced);
- UserEcho ids become undo checkpoints;
- tool calls go through the safety policy before anything is shown;
- text is accumulated per segment and streamed with a throttle. A tool
  call closes the open segment.

Provider process exits are often noise after a turn already finished
(or was stopped). They are suppressed when there is evidence the turn
is over: a Result was seen, the ask-user tool fired, a stop was
requested, or partial text exists. Everything else is recorded on the
session and re-raised.

The gate slot is released exactly once on every exit path.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from .errors import (
    ConcurrencyExceededError,
    ProviderExitError,
    QueryCancelledError,
    SafetyBlockedError,
    SessionBusyError,
)
from .events import (
    AssistantText,
    AssistantThinking,
    Result,
    StreamEvent,
    ToolUse,
    UserEcho,
)
from .lifecycle import QueryState
from .models import PermissionMode, ProviderOptions, StatusKind, TimeoutResponse
from .providers.base import AbortToken
from .thinking import get_thinking_level, thinking_label
from tether.shared.formatters.tool_status import format_tool_status

if TYPE_CHECKING:
    from .config import AskUserProbe, StatusCallback, TetherConfig
    from .session import AgentSession

logger = logging.getLogger(__name__)

ASK_USER_SENTINEL = "[Waiting for user selection]"
NO_RESPONSE_PLACEHOLDER = "No response from agent."
ASK_USER_TOOL_PREFIX = "mcp__ask-user"
FILE_TOOLS = ("Read", "Write", "Edit")


class SafetyPolicy(Protocol):
    """Tool-call gatekeeper consulted before a tool is shown or run."""

    def check_command_safety(self, command: str) -> tuple[bool, str]: ...

    def is_path_allowed(self, path: str) -> bool: ...


@dataclass
class QueryContext:
    """Transport hooks for one query."""
    status_callback: StatusCallback
    ask_user_probe: AskUserProbe | None = None


@dataclass
class QueryRun:
    """In-flight state of a single query. Discarded at cleanup."""
    abort_token: AbortToken
    started_at: float
    last_timeout_check_at: float
    response_parts: list[str] = field(default_factory=list)
    segment_id: int = 0
    segment_text: str = ""
    last_text_update: float = 0.0
    result_seen: bool = False
    ask_user_triggered: bool = False
    stopped: bool = False
    forced_response: str | None = None


def decorate_new_session_prompt(
    message: str,
    handoff: str | None,
    now: datetime | None = None,
) -> str:
    """Prefix the first message of a session with the date and handoff."""
    now = now or datetime.now().astimezone()
    date_prefix = (
        f"[Current date/time: {now.strftime('%A, %B %d, %Y, %I:%M %p %Z').strip()}]\n\n"
    )
    if handoff:
        return (
            f"{date_prefix}[Previous session summary]\n{handoff}\n\n"
            f"[New request]\n{message}"
        )
    return date_prefix + message


class QueryOrchestrator:
    """Runs queries for one AgentSession.

    Owns no state of its own beyond collaborators: everything that
    outlives a query lives on the session, everything else on QueryRun.
    """

    # Ask-user side channel timing (seconds)
    ask_user_initial_delay = 0.2
    ask_user_retry_delay = 0.1
    ask_user_attempts = 3

    def __init__(
        self,
        session: AgentSession,
        config: TetherConfig,
        safety: SafetyPolicy,
        clock=time.monotonic,
    ) -> None:
        self._session = session
        self._config = config
        self._safety = safety
        self._clock = clock

    # ── Admission ──

    def _resolve_thinking(self, message: str) -> int:
        session = self._session
        if session.force_thinking_tokens is not None:
            tokens = session.force_thinking_tokens
            session.force_thinking_tokens = None
            return tokens
        return get_thinking_level(
            message,
            self._config.thinking_keywords,
            self._config.thinking_deep_keywords,
            budget=self._config.thinking_budget,
            deep_budget=self._config.thinking_deep_budget,
        )

    def _build_options(self, thinking_tokens: int) -> ProviderOptions:
        session = self._session
        return ProviderOptions(
            model=session.provider.resolve_model(session.model),
            cwd=session.working_dir,
            thinking_tokens=thinking_tokens,
            permission_mode=(
                PermissionMode.PLAN if session.plan_mode else PermissionMode.BYPASS
            ),
            resume=session.session_id,
            additional_dirs=list(self._config.allowed_paths),
            system_prompt=self._config.system_prompt,
            mcp_servers=dict(self._config.mcp_servers),
            allowed_roots=[session.working_dir, *self._config.allowed_paths],
        )

    async def send_message(self, message: str, context: QueryContext) -> str:
        """Run one query and return the final response text.

        Raises ConcurrencyExceededError, SafetyBlockedError,
        QueryCancelledError or ProviderCrashError.
        """
        session = self._session
        if session.query_state == QueryState.IDLE:
            session.transition(QueryState.PROCESSING)
        elif session.query_state != QueryState.PROCESSING:
            raise SessionBusyError()

        try:
            is_new_session = session.session_id is None
            thinking_tokens = self._resolve_thinking(message)
            options = self._build_options(thinking_tokens)
            session.last_user_message = message

            prompt = message
            if is_new_session:
                prompt = decorate_new_session_prompt(
                    message, session.consume_handoff_context()
                )
                logger.info(
                    "STARTING new %s session (thinking=%s)",
                    session.provider.name, thinking_label(thinking_tokens),
                )
            else:
                logger.info(
                    "RESUMING session %s... (thinking=%s)",
                    session.session_id[:8], thinking_label(thinking_tokens),
                )

            if session.stop_requested:
                logger.info(
                    "Query cancelled before starting (stop was requested during processing)"
                )
                session.stop_requested = False
                raise QueryCancelledError()

            gate = session.gate
            if not gate.try_acquire():
                raise ConcurrencyExceededError(gate.active, gate.limit)
        except QueryCancelledError:
            session.transition(QueryState.ABORTED)
            session.transition(QueryState.IDLE)
            raise
        except BaseException:
            session.transition(QueryState.FAILED)
            session.transition(QueryState.IDLE)
            raise

        return await self._run(prompt, options, context)

    # ── Running ──

    async def _run(
        self,
        prompt: str,
        options: ProviderOptions,
        context: QueryContext,
    ) -> str:
        session = self._session
        now = self._clock()
        run = QueryRun(
            abort_token=AbortToken(),
            started_at=now,
            last_timeout_check_at=now,
        )
        session.begin_query(run.abort_token)
        session.transition(QueryState.RUNNING)
        session.running_listeners.notify(True)

        outcome = QueryState.FAILED
        query = None
        try:
            query = session.provider.create_query(prompt, options, run.abort_token)
            session.query_instance = query

            async for event in query:
                if session.stop_requested:
                    logger.info("Query aborted by user")
                    run.stopped = True
                    break
                await self._check_timeout(run, context)
                self._capture_session_id(event)
                await self._handle_event(event, run, context)
                if run.ask_user_triggered:
                    break
            outcome = self._outcome(run)
        except QueryCancelledError:
            outcome = QueryState.ABORTED
            raise
        except ProviderExitError as exc:
            if not self._exit_is_benign(run):
                self._record_error(exc)
                raise
            if run.response_parts and not run.result_seen:
                run.forced_response = "".join(run.response_parts)
            logger.warning("Suppressed post-completion error: %s", exc)
            outcome = self._outcome(run)
        except Exception as exc:
            self._record_error(exc)
            raise
        finally:
            session.gate.release()
            if query is not None:
                await query.aclose()
            session.end_query()
            session.transition(outcome)
            session.transition(QueryState.IDLE)
            session.running_listeners.notify(False)

        return await self._complete(run, context)

    def _outcome(self, run: QueryRun) -> QueryState:
        if self._session.stop_requested:
            run.stopped = True
        if run.stopped:
            return QueryState.ABORTED
        if run.ask_user_triggered:
            return QueryState.ASK_USER_PENDING
        return QueryState.COMPLETED

    def _exit_is_benign(self, run: QueryRun) -> bool:
        return bool(
            run.result_seen
            or run.ask_user_triggered
            or self._session.stop_requested
            or run.response_parts
        )

    def _record_error(self, exc: BaseException) -> None:
        logger.error("Error in query: %s", exc)
        self._session.last_error = str(exc)[:100]
        self._session.last_error_at = datetime.now()

    async def _check_timeout(self, run: QueryRun, context: QueryContext) -> None:
        interval = self._config.query_timeout_seconds
        now = self._clock()
        elapsed = now - run.started_at
        if not (elapsed > interval and now - run.last_timeout_check_at > interval):
            return

        session = self._session
        run.last_timeout_check_at = now
        session.timeout_response = TimeoutResponse.NONE
        minutes = round(elapsed / 60)
        logger.info("Query running for %d minutes, prompting user", minutes)
        await context.status_callback(
            StatusKind.TIMEOUT_CHECK.value,
            f"⏱️ Query running for {minutes} minutes. Stop it?",
        )

        wait_start = self._clock()
        while self._clock() - wait_start < self._config.timeout_prompt_wait_seconds:
            if session.timeout_response == TimeoutResponse.ABORT:
                logger.info("User chose to abort query")
                run.abort_token.abort()
                raise QueryCancelledError("Query cancelled by user")
            if session.timeout_response == TimeoutResponse.CONTINUE:
                logger.info("User chose to continue query")
                break
            if session.stop_requested:
                break
            await asyncio.sleep(self._config.timeout_poll_interval_seconds)
        else:
            logger.info("No user response, continuing automatically")
        session.timeout_response = TimeoutResponse.NONE
        run.last_timeout_check_at = self._clock()

    def _capture_session_id(self, event: StreamEvent) -> None:
        session = self._session
        if session.session_id is None and event.session_id:
            session.session_id = event.session_id
            logger.info("GOT session_id: %s...", event.session_id[:8])
            session.persistence.save(session)

    async def _handle_event(
        self,
        event: StreamEvent,
        run: QueryRun,
        context: QueryContext,
    ) -> None:
        session = self._session
        callback = context.status_callback

        if isinstance(event, UserEcho):
            if event.checkpoint_id:
                session.checkpoints.push(event.checkpoint_id)

        elif isinstance(event, AssistantThinking):
            logger.debug("THINKING BLOCK: %s...", event.delta[:100])
            await callback(StatusKind.THINKING.value, event.delta)

        elif isinstance(event, ToolUse):
            await self._handle_tool(event, run, context)

        elif isinstance(event, AssistantText):
            run.response_parts.append(event.delta)
            run.segment_text += event.delta
            now = self._clock()
            if (
                now - run.last_text_update > self._config.streaming_throttle_seconds
                and len(run.segment_text) > self._config.min_segment_update_chars
            ):
                await callback(StatusKind.TEXT.value, run.segment_text, run.segment_id)
                run.last_text_update = now

        elif isinstance(event, Result):
            logger.info("Response complete")
            run.result_seen = True
            if event.usage is not None:
                session.last_usage = event.usage
                session.usage.add(event.usage)
                logger.info(
                    "Usage: in=%d out=%d cache_read=%d cache_create=%d",
                    event.usage.input_tokens,
                    event.usage.output_tokens,
                    event.usage.cache_read_tokens,
                    event.usage.cache_creation_tokens,
                )

    async def _handle_tool(
        self,
        event: ToolUse,
        run: QueryRun,
        context: QueryContext,
    ) -> None:
        callback = context.status_callback
        name = event.name
        tool_input = event.input or {}

        if name == "Bash":
            command = str(tool_input.get("command", ""))
            is_safe, reason = self._safety.check_command_safety(command)
            if not is_safe:
                logger.warning("BLOCKED: %s", reason)
                await callback(StatusKind.TOOL.value, f"BLOCKED: {reason}")
                raise SafetyBlockedError(name, reason)

        if name in FILE_TOOLS:
            file_path = str(tool_input.get("file_path", ""))
            if file_path and not self._is_exempt_read(name, file_path):
                if not self._safety.is_path_allowed(file_path):
                    logger.warning(
                        "BLOCKED: File access outside allowed paths: %s", file_path
                    )
                    await callback(StatusKind.TOOL.value, f"Access denied: {file_path}")
                    raise SafetyBlockedError(name, file_path)

        if run.segment_text:
            await callback(
                StatusKind.SEGMENT_END.value, run.segment_text, run.segment_id
            )
            run.segment_id += 1
            run.segment_text = ""

        display = format_tool_status(name, tool_input)
        self._session.current_tool = display
        logger.info("Tool: %s", display)

        if name.startswith(ASK_USER_TOOL_PREFIX):
            run.ask_user_triggered = await self._probe_ask_user(context)
            return
        await callback(StatusKind.TOOL.value, display)

    def _is_exempt_read(self, name: str, file_path: str) -> bool:
        if name != "Read":
            return False
        if "/.claude/" in file_path:
            return True
        return any(file_path.startswith(p) for p in self._config.temp_paths)

    async def _probe_ask_user(self, context: QueryContext) -> bool:
        probe = context.ask_user_probe
        if probe is None:
            return False
        await asyncio.sleep(self.ask_user_initial_delay)
        for attempt in range(self.ask_user_attempts):
            if await probe():
                logger.info("Ask-user buttons presented, waiting for selection")
                return True
            if attempt < self.ask_user_attempts - 1:
                await asyncio.sleep(self.ask_user_retry_delay)
        return False

    # ── Completion ──

    async def _complete(self, run: QueryRun, context: QueryContext) -> str:
        session = self._session
        callback = context.status_callback

        if run.stopped:
            interrupted = session.peek_interrupt_flag()
            session.stop_requested = False
            raise QueryCancelledError("Query stopped", interrupted=interrupted)

        session.last_activity_at = datetime.now()
        session.last_error = None
        session.last_error_at = None

        if run.ask_user_triggered:
            await callback(StatusKind.DONE.value, "")
            return ASK_USER_SENTINEL

        if run.segment_text:
            await callback(
                StatusKind.SEGMENT_END.value, run.segment_text, run.segment_id
            )
        await callback(StatusKind.DONE.value, "")

        response = (
            run.forced_response
            or "".join(run.response_parts)
            or NO_RESPONSE_PLACEHOLDER
        )
        session.last_bot_response = response
        return response
