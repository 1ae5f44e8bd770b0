"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via TETHER_* env vars,
or layer a YAML file on top with yaml_config.load_yaml_config().
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Status callback delivered to the chat transport.
# Signature: async def callback(kind, text, segment_id=None) -> None
# kind is a StatusKind value: thinking | tool | text | segment_end |
# timeout_check | done
StatusCallback = Callable[..., Awaitable[None]]

# Side-channel probe for the ask-user tool.
# Signature: async def probe() -> bool
# Returns True once the transport has presented the choice buttons.
AskUserProbe = Callable[[], Awaitable[bool]]


DEFAULT_SAFETY_PROMPT = (
    "You are running on behalf of a remote chat user. Never delete files "
    "outside the working directory, never run destructive system "
    "commands, and ask before making irreversible changes."
)


def _split_csv(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _default_session_file() -> str:
    return str(Path.home() / ".tether" / "session.json")


@dataclass
class TetherConfig:
    """Session engine configuration."""

    # Provider and working directory
    provider: str = "claude"
    working_dir: str = field(default_factory=os.getcwd)
    # Directories the agent may touch besides working_dir.
    # Empty means "working_dir only" for the default safety policy.
    allowed_paths: list[str] = field(default_factory=list)
    # Readable scratch locations exempt from path checks.
    temp_paths: list[str] = field(
        default_factory=lambda: ["/tmp/", "/private/tmp/", "/var/folders/"]
    )

    # Global admission control. Shared across every session.
    max_concurrent_queries: int = 3

    # Long-running query escalation. Advisory only: the user is asked,
    # the query is never killed without an explicit "abort".
    query_timeout_seconds: float = 180.0
    timeout_prompt_wait_seconds: float = 30.0
    timeout_poll_interval_seconds: float = 0.5

    # Streaming text throttle
    streaming_throttle_seconds: float = 0.5
    min_segment_update_chars: int = 20

    # Thinking budget keywords (matched case-insensitively, deep first)
    thinking_keywords: list[str] = field(
        default_factory=lambda: ["think", "pensa", "ragiona"]
    )
    thinking_deep_keywords: list[str] = field(
        default_factory=lambda: ["ultrathink", "think hard", "pensa bene"]
    )
    thinking_budget: int = 10000
    thinking_deep_budget: int = 50000

    # Persistence
    session_file: str = field(default_factory=_default_session_file)
    save_debounce_seconds: float = 0.5

    # Provider runtimes
    claude_cli_path: str | None = None
    codex_command: str = "codex"
    system_prompt: str = DEFAULT_SAFETY_PROMPT
    mcp_servers: dict[str, Any] = field(default_factory=dict)

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> TetherConfig:
        """Load configuration from TETHER_* environment variables."""
        tether_vars = {
            k: v for k, v in os.environ.items() if k.startswith("TETHER_")
        }
        if tether_vars:
            logger.info(
                "TetherConfig.from_env: TETHER_* env overrides: %s",
                ", ".join(sorted(tether_vars)),
            )
        else:
            logger.debug("TetherConfig.from_env: no TETHER_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            provider=os.getenv("TETHER_PROVIDER", defaults.provider),
            working_dir=os.getenv("TETHER_WORKING_DIR", defaults.working_dir),
            allowed_paths=_split_csv(os.getenv("TETHER_ALLOWED_PATHS", "")),
            temp_paths=(
                _split_csv(os.getenv("TETHER_TEMP_PATHS", ""))
                or defaults.temp_paths
            ),
            max_concurrent_queries=int(os.getenv(
                "TETHER_MAX_CONCURRENT_QUERIES",
                str(defaults.max_concurrent_queries),
            )),
            query_timeout_seconds=float(os.getenv(
                "TETHER_QUERY_TIMEOUT", str(defaults.query_timeout_seconds)
            )),
            timeout_prompt_wait_seconds=float(os.getenv(
                "TETHER_TIMEOUT_PROMPT_WAIT",
                str(defaults.timeout_prompt_wait_seconds),
            )),
            streaming_throttle_seconds=float(os.getenv(
                "TETHER_STREAMING_THROTTLE",
                str(defaults.streaming_throttle_seconds),
            )),
            thinking_keywords=(
                _split_csv(os.getenv("TETHER_THINKING_KEYWORDS", "").lower())
                or defaults.thinking_keywords
            ),
            thinking_deep_keywords=(
                _split_csv(os.getenv("TETHER_THINKING_DEEP_KEYWORDS", "").lower())
                or defaults.thinking_deep_keywords
            ),
            session_file=os.getenv("TETHER_SESSION_FILE", defaults.session_file),
            save_debounce_seconds=float(os.getenv(
                "TETHER_SAVE_DEBOUNCE", str(defaults.save_debounce_seconds)
            )),
            claude_cli_path=os.getenv("TETHER_CLAUDE_CLI_PATH", "").strip() or None,
            codex_command=os.getenv("TETHER_CODEX_COMMAND", defaults.codex_command),
            system_prompt=os.getenv("TETHER_SYSTEM_PROMPT", defaults.system_prompt),
            log_level=os.getenv("TETHER_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "TetherConfig.from_env: provider=%s cwd=%s max_queries=%d log_level=%s",
            config.provider, config.working_dir,
            config.max_concurrent_queries, config.log_level,
        )
        return config
