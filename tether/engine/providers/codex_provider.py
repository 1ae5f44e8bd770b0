"""OpenAI Codex CLI provider.

Uses `codex exec --json` for each agent turn and translates the CLI's
thread/turn/item event vocabulary into the normalized StreamEvent
union. Codex has no file checkpoints, so undo is refused explicitly.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shutil
from collections.abc import AsyncIterator
from typing import Any

from ..errors import ProviderCrashError, ProviderExitError
from ..events import (
    AssistantText,
    AssistantThinking,
    Result,
    SessionStarted,
    StreamEvent,
    ToolUse,
)
from ..models import ModelTier, PermissionMode, ProviderOptions, TokenUsage
from .base import AbortToken, Provider

logger = logging.getLogger(__name__)
_CODEX_REASONING_SUFFIX_RE = re.compile(
    r"^(?P<model>.+?)::reasoning_effort=(?P<effort>low|medium|high)$"
)
_DEFAULT_CODEX_MODEL = "gpt-5.2-codex"
_TIER_TO_REASONING = {
    ModelTier.CHEAP: "low",
    ModelTier.FAST: "medium",
    ModelTier.CAPABLE: "high",
}
_ITEM_EVENTS = {"item.started", "item.updated", "item.completed"}
# command_execution items carry the full aggregated_output on one line
STREAM_LINE_LIMIT = 32 * 1024 * 1024


def is_path_within(path: str, roots: list[str]) -> bool:
    """True if *path* equals or lives under one of *roots*."""
    resolved = os.path.realpath(os.path.expanduser(path))
    for root in roots:
        root_resolved = os.path.realpath(os.path.expanduser(root))
        if resolved == root_resolved or resolved.startswith(root_resolved.rstrip(os.sep) + os.sep):
            return True
    return False


class CodexEventTranslator:
    """Stateful translation of `codex exec --json` events.

    Codex reports agent_message and reasoning items as cumulative text
    snapshots on every update. The translator keeps the last text seen
    per item id and emits only the new suffix, so consumers see proper
    deltas. Tool-like items are emitted once per distinct status.
    """

    def __init__(self, thread_id: str | None = None) -> None:
        self.thread_id = thread_id
        self.final_text = ""
        self.saw_turn_completed = False
        self._text_by_item: dict[str, str] = {}
        self._thinking_by_item: dict[str, str] = {}
        self._tool_status_by_item: dict[str, str] = {}

    def _delta(self, item_id: str, text: str, store: dict[str, str]) -> str:
        if not text:
            return ""
        previous = store.get(item_id, "")
        delta = text[len(previous):] if text.startswith(previous) else text
        if delta:
            store[item_id] = text
        return delta

    def _text(self, item_id: str, text: str) -> list[StreamEvent]:
        delta = self._delta(item_id, text, self._text_by_item)
        if not delta:
            return []
        self.final_text += delta
        return [AssistantText(session_id=self.thread_id, delta=delta)]

    def _thinking(self, item_id: str, text: str) -> list[StreamEvent]:
        delta = self._delta(item_id, text, self._thinking_by_item)
        if not delta:
            return []
        return [AssistantThinking(session_id=self.thread_id, delta=delta)]

    def _tool_once(
        self,
        item_id: str,
        status_key: str,
        name: str,
        tool_input: dict[str, Any],
    ) -> list[StreamEvent]:
        if self._tool_status_by_item.get(item_id) == status_key:
            return []
        self._tool_status_by_item[item_id] = status_key
        return [ToolUse(session_id=self.thread_id, name=name, input=tool_input)]

    def translate(self, event: dict[str, Any]) -> list[StreamEvent]:
        """Translate one decoded JSON event. Raises on turn failure."""
        etype = event.get("type")

        if etype == "thread.started":
            self.thread_id = event.get("thread_id") or self.thread_id
            if self.thread_id:
                return [SessionStarted(session_id=self.thread_id)]
            return []

        if etype == "turn.failed":
            error = event.get("error") or {}
            message = error.get("message") if isinstance(error, dict) else None
            raise ProviderCrashError("codex", message or "Codex turn failed.")

        if etype == "error":
            raise ProviderCrashError(
                "codex", event.get("message") or "Codex stream error."
            )

        if etype == "turn.completed":
            self.saw_turn_completed = True
            return [Result(
                session_id=self.thread_id,
                usage=TokenUsage.from_dict(event.get("usage")),
            )]

        if etype not in _ITEM_EVENTS:
            return []

        item = event.get("item") or {}
        item_id = str(item.get("id", ""))
        item_type = item.get("type")
        boundary = etype in {"item.started", "item.completed"}

        if item_type == "agent_message":
            return self._text(item_id, item.get("text", ""))
        if item_type == "reasoning":
            return self._thinking(item_id, item.get("text", ""))
        if item_type == "command_execution" and boundary:
            return self._tool_once(
                item_id,
                f"{item.get('status')}:{item.get('exit_code', '')}",
                "CodexBash",
                {
                    "command": item.get("command", ""),
                    "status": item.get("status"),
                    "exit_code": item.get("exit_code"),
                },
            )
        if item_type == "file_change" and boundary:
            changes = item.get("changes") or []
            return self._tool_once(
                item_id,
                f"{item.get('status')}:{len(changes)}",
                "CodexFileChange",
                {"status": item.get("status"), "changes": changes},
            )
        if item_type == "mcp_tool_call" and boundary:
            error = item.get("error") or {}
            return self._tool_once(
                item_id,
                str(item.get("status")),
                f"mcp__{item.get('server', '')}__{item.get('tool', '')}",
                {
                    "status": item.get("status"),
                    "query": item.get("arguments"),
                    "error": error.get("message") if isinstance(error, dict) else None,
                },
            )
        if item_type == "web_search" and etype == "item.started":
            return [ToolUse(
                session_id=self.thread_id,
                name="WebSearch",
                input={"query": item.get("query", "")},
            )]
        if item_type == "todo_list" and etype == "item.completed":
            return [ToolUse(
                session_id=self.thread_id,
                name="TodoWrite",
                input={"items": item.get("items") or []},
            )]
        if item_type == "error":
            return self._text(item_id, f"⚠️ {item.get('message', '')}")
        return []

    def finish(self) -> list[StreamEvent]:
        """Synthesize a Result when the stream ended without turn.completed."""
        if not self.saw_turn_completed and self.final_text:
            return [Result(session_id=self.thread_id)]
        return []


class CodexProvider(Provider):
    """Provider backed by the OpenAI Codex CLI.

    Spawns one `codex exec --json` process per turn and resumes threads
    with `codex exec resume <thread_id>`.

    Auth: Works with OAuth (ChatGPT plan) by default. If api_key_env is
    set and the env var exists, it's passed to the subprocess
    environment.
    """

    def __init__(
        self,
        command: str = "codex",
        api_key_env: str | None = None,
        default_model: str = _DEFAULT_CODEX_MODEL,
        allowed_paths: list[str] | None = None,
        temp_paths: list[str] | None = None,
    ) -> None:
        self._command = self.resolve_command(command, "codex")
        self._api_key_env = api_key_env
        self._default_model = default_model
        self._allowed_paths = list(allowed_paths or [])
        self._temp_paths = list(temp_paths or [])

    @property
    def name(self) -> str:
        return "codex"

    def resolve_model(self, tier: ModelTier) -> str:
        return (
            f"{self._default_model}"
            f"::reasoning_effort={_TIER_TO_REASONING[tier]}"
        )

    @staticmethod
    def _split_model_and_reasoning(
        model_id: str,
    ) -> tuple[str, str | None]:
        """Extract codex reasoning effort encoded in model_id suffix."""
        match = _CODEX_REASONING_SUFFIX_RE.match(model_id)
        if match:
            return match.group("model"), match.group("effort")
        return model_id, None

    def _build_env(self) -> dict[str, str] | None:
        """Build subprocess environment with optional API key."""
        if self._api_key_env:
            key = os.environ.get(self._api_key_env)
            if key:
                env = os.environ.copy()
                env["OPENAI_API_KEY"] = key
                return env
        return None

    def _check_cwd(self, options: ProviderOptions) -> None:
        cwd = options.cwd
        roots = (options.allowed_roots or self._allowed_paths) + self._temp_paths
        if cwd and roots and not is_path_within(cwd, roots):
            raise ProviderCrashError(
                self.name,
                f"Working directory is not allowed: {cwd}. Check allowed paths.",
            )

    def build_exec_cmd(self, options: ProviderOptions) -> list[str]:
        """Build the `codex exec` argv for one turn (prompt comes on stdin)."""
        model, reasoning_effort = self._split_model_and_reasoning(
            options.model or self._default_model
        )
        cmd = [self._command]
        cmd.extend(["-c", f'model="{model}"'])
        if reasoning_effort:
            cmd.extend(["-c", f'model_reasoning_effort="{reasoning_effort}"'])
        cmd.append("exec")
        cmd.append("--json")
        cmd.append("--skip-git-repo-check")

        if options.permission_mode == PermissionMode.PLAN:
            cmd.extend(["--sandbox", "read-only"])
        else:
            cmd.append("--full-auto")

        if options.cwd:
            cmd.extend(["-C", options.cwd])
        for extra_dir in options.additional_dirs:
            cmd.extend(["--add-dir", extra_dir])

        if options.resume:
            cmd.extend(["resume", options.resume])
        cmd.append("-")
        return cmd

    async def stream_events(
        self,
        prompt: str,
        options: ProviderOptions,
        abort_token: AbortToken,
    ) -> AsyncIterator[StreamEvent]:
        """Run a Codex turn via `codex exec --json`.

        Uses asyncio.create_subprocess_exec (array-based, no shell)
        for safe argument passing.
        """
        self._check_cwd(options)
        if options.thinking_tokens:
            logger.debug(
                "Codex ignores thinking budget (%d); reasoning effort comes from the model tier",
                options.thinking_tokens,
            )
        cmd = self.build_exec_cmd(options)
        logger.info(
            "Codex query starting model=%s cwd=%s resume=%s",
            options.model, options.cwd, (options.resume or "")[:8] or "-",
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._build_env(),
                cwd=options.cwd or None,
                limit=STREAM_LINE_LIMIT,
            )
        except FileNotFoundError as exc:
            raise ProviderCrashError(
                self.name,
                f"'{self._command}' CLI not found. Install Codex CLI first.",
            ) from exc

        stderr_chunks: list[str] = []

        async def _drain_stderr() -> None:
            while True:
                chunk = await proc.stderr.readline()
                if not chunk:
                    return
                stderr_chunks.append(chunk.decode("utf-8", errors="replace"))

        stderr_task = asyncio.ensure_future(_drain_stderr())
        translator = CodexEventTranslator(thread_id=options.resume)
        try:
            if proc.stdin is not None:
                proc.stdin.write(prompt.encode("utf-8"))
                await proc.stdin.drain()
                proc.stdin.close()

            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                text = line.decode("utf-8", errors="replace").strip()
                if not text:
                    continue
                try:
                    event = json.loads(text)
                except json.JSONDecodeError as exc:
                    raise ProviderCrashError(
                        self.name, f"Failed to parse Codex event: {exc}\n{text}"
                    ) from exc
                if not isinstance(event, dict):
                    continue
                for normalized in translator.translate(event):
                    yield normalized

            for normalized in translator.finish():
                yield normalized

            returncode = await proc.wait()
            await stderr_task
            if returncode and not abort_token.aborted:
                raise ProviderExitError(self.name, returncode, "".join(stderr_chunks))
        finally:
            if proc.returncode is None:
                await self._terminate(proc)
            if not stderr_task.done():
                stderr_task.cancel()

    @staticmethod
    async def _terminate(proc: asyncio.subprocess.Process) -> None:
        pid = proc.pid
        try:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
            logger.info("Codex process stopped (pid=%d)", pid)
        except ProcessLookupError:
            pass

    def is_available(self) -> bool:
        """Check if codex CLI is installed."""
        return shutil.which(self._command) is not None
