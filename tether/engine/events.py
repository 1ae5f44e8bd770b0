"""Normalized stream events produced by providers.

Every provider translates its runtime's native message vocabulary into
these dataclasses. The orchestrator only ever consumes this union.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

from .models import TokenUsage


@dataclass
class ProviderEvent:
    """Base event. ``session_id`` is the remote session it belongs to."""
    event_type: str = ""
    session_id: str | None = None


@dataclass
class SessionStarted(ProviderEvent):
    event_type: str = "session_started"


@dataclass
class UserEcho(ProviderEvent):
    """The runtime echoed a user turn; its id is an undo checkpoint."""
    event_type: str = "user_echo"
    checkpoint_id: str = ""


@dataclass
class AssistantText(ProviderEvent):
    event_type: str = "assistant_text"
    delta: str = ""


@dataclass
class AssistantThinking(ProviderEvent):
    event_type: str = "assistant_thinking"
    delta: str = ""


@dataclass
class ToolUse(ProviderEvent):
    event_type: str = "tool_use"
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class Result(ProviderEvent):
    event_type: str = "result"
    usage: TokenUsage | None = None


StreamEvent = Union[
    SessionStarted,
    UserEcho,
    AssistantText,
    AssistantThinking,
    ToolUse,
    Result,
]
