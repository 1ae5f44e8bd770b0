"""Claude Agent SDK provider.

Wraps claude_agent_sdk.ClaudeSDKClient for streaming agent turns with
model selection, thinking budget, working-directory scoping, session
resume and file checkpointing (undo).
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import AsyncIterator
from typing import Any

from ..errors import ProviderCrashError, ProviderExitError, RewindFailedError
from ..events import (
    AssistantText,
    AssistantThinking,
    Result,
    SessionStarted,
    StreamEvent,
    ToolUse,
    UserEcho,
)
from ..models import ModelTier, ProviderOptions, TokenUsage
from .base import AbortToken, Provider

logger = logging.getLogger(__name__)

CLAUDE_MODELS: dict[ModelTier, str] = {
    ModelTier.FAST: "claude-sonnet-4-5",
    ModelTier.CAPABLE: "claude-opus-4-5",
    ModelTier.CHEAP: "claude-haiku-4-5",
}


def normalize_sdk_message(
    message: Any,
    session_id: str | None = None,
) -> list[StreamEvent]:
    """Translate one SDK message into zero or more StreamEvents.

    Dispatches on message shape rather than class so the translation
    works across SDK versions:
    - ResultMessage (num_turns, usage)       -> Result
    - SystemMessage (subtype + data)         -> SessionStarted on init
    - AssistantMessage (model + content)     -> Thinking / ToolUse / Text
    - UserMessage (content, uuid)            -> UserEcho
    """
    events: list[StreamEvent] = []

    if hasattr(message, "num_turns"):
        sid = getattr(message, "session_id", None) or session_id
        usage = getattr(message, "usage", None)
        events.append(Result(
            session_id=sid,
            usage=TokenUsage.from_dict(usage) if usage else None,
        ))
        return events

    if hasattr(message, "subtype") and hasattr(message, "data"):
        data = getattr(message, "data", None) or {}
        sid = data.get("session_id") if isinstance(data, dict) else None
        if sid:
            events.append(SessionStarted(session_id=sid))
        return events

    content = getattr(message, "content", None)
    if hasattr(message, "model") and isinstance(content, list):
        for block in content:
            if hasattr(block, "thinking"):
                if block.thinking:
                    events.append(AssistantThinking(
                        session_id=session_id, delta=str(block.thinking),
                    ))
            elif hasattr(block, "name") and hasattr(block, "input"):
                tool_input = block.input if isinstance(block.input, dict) else {}
                events.append(ToolUse(
                    session_id=session_id, name=block.name, input=tool_input,
                ))
            elif hasattr(block, "text"):
                if block.text:
                    events.append(AssistantText(
                        session_id=session_id, delta=block.text,
                    ))
        return events

    if content is not None:
        uuid = getattr(message, "uuid", None)
        if uuid:
            events.append(UserEcho(session_id=session_id, checkpoint_id=str(uuid)))
    return events


class ClaudeProvider(Provider):
    """Provider backed by the Claude Agent SDK.

    Auth: Works with OAuth (Claude subscription) by default. If
    api_key_env is set and the env var exists, it is exported as
    ANTHROPIC_API_KEY for the SDK-managed CLI.
    """

    def __init__(
        self,
        api_key_env: str | None = None,
        cli_path: str | None = None,
        setting_sources: list[str] | None = None,
    ) -> None:
        self._api_key_env = api_key_env
        self._cli_path = cli_path
        self._setting_sources = setting_sources or ["user", "project"]

    @property
    def name(self) -> str:
        return "claude"

    @property
    def supports_rewind(self) -> bool:
        return True

    def resolve_model(self, tier: ModelTier) -> str:
        return CLAUDE_MODELS[tier]

    def _build_env(self) -> dict[str, str]:
        env: dict[str, str] = {}
        if self._api_key_env:
            key = os.environ.get(self._api_key_env)
            if key:
                env["ANTHROPIC_API_KEY"] = key
        return env

    def _resolve_cli_path(self, options: ProviderOptions) -> str | None:
        cli_path = options.executable_path or self._cli_path
        if not cli_path:
            return None
        resolved = shutil.which(cli_path)
        if resolved:
            return resolved
        if os.path.isfile(cli_path):
            return cli_path
        logger.warning(
            "Configured Claude CLI not found: %s; falling back to SDK default",
            cli_path,
        )
        return None

    def build_sdk_options(self, options: ProviderOptions):
        """Build ClaudeAgentOptions from logical provider options."""
        from claude_agent_sdk import ClaudeAgentOptions

        kwargs: dict[str, Any] = dict(
            model=options.model,
            cwd=options.cwd,
            setting_sources=self._setting_sources,
            permission_mode=options.permission_mode.value,
            system_prompt=options.system_prompt or "",
            mcp_servers=options.mcp_servers,
            max_thinking_tokens=options.thinking_tokens or None,
            add_dirs=list(options.additional_dirs),
            resume=options.resume,
            enable_file_checkpointing=True,
            # User turns are echoed back with their uuid, which is the
            # checkpoint id rewind_files() expects.
            extra_args={"replay-user-messages": None},
            env=self._build_env(),
        )
        cli_path = self._resolve_cli_path(options)
        if cli_path:
            kwargs["cli_path"] = cli_path
        return ClaudeAgentOptions(**kwargs)

    async def stream_events(
        self,
        prompt: str,
        options: ProviderOptions,
        abort_token: AbortToken,
    ) -> AsyncIterator[StreamEvent]:
        """Run one turn through ClaudeSDKClient and normalize its messages."""
        from claude_agent_sdk import ClaudeSDKClient, ClaudeSDKError, ProcessError

        sdk_options = self.build_sdk_options(options)
        # The SDK refuses to launch inside another Claude Code session.
        os.environ.pop("CLAUDECODE", None)
        logger.info(
            "Claude query starting model=%s mode=%s thinking=%d cwd=%s resume=%s",
            options.model,
            sdk_options.permission_mode,
            options.thinking_tokens,
            options.cwd,
            (options.resume or "")[:8] or "-",
        )

        session_id = options.resume
        try:
            async with ClaudeSDKClient(options=sdk_options) as client:
                await client.query(prompt)
                async for message in client.receive_response():
                    for event in normalize_sdk_message(message, session_id):
                        if event.session_id and event.session_id != session_id:
                            session_id = event.session_id
                        yield event
        except ProcessError as exc:
            if abort_token.aborted:
                logger.debug("Claude process exited after abort: %s", exc)
                return
            raise ProviderExitError(
                self.name,
                getattr(exc, "exit_code", None),
                getattr(exc, "stderr", "") or "",
            ) from exc
        except ClaudeSDKError as exc:
            if abort_token.aborted:
                return
            raise ProviderCrashError(self.name, str(exc)) from exc

    async def rewind_files(
        self,
        checkpoint_id: str,
        options: ProviderOptions,
    ) -> None:
        """Reconnect to the session and rewind files to a user turn."""
        from claude_agent_sdk import ClaudeSDKClient

        if not options.resume:
            raise RewindFailedError(checkpoint_id, "no session to resume")
        logger.info("Rewinding files to checkpoint %s...", checkpoint_id[:8])
        sdk_options = self.build_sdk_options(options)
        try:
            async with ClaudeSDKClient(options=sdk_options) as client:
                await client.rewind_files(checkpoint_id)
        except Exception as exc:
            raise RewindFailedError(checkpoint_id, str(exc)) from exc

    def is_available(self) -> bool:
        """The SDK bundles its CLI; a configured path must exist."""
        if self._cli_path:
            return shutil.which(self._cli_path) is not None or os.path.isfile(self._cli_path)
        try:
            import claude_agent_sdk  # noqa: F401
        except ImportError:
            return False
        return True
