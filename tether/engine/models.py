"""Core data models for the session engine.

All dataclasses, enums, and type aliases shared between the session,
the orchestrator and the providers. Single source of truth to avoid
circular imports.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class ModelTier(str, Enum):
    """Provider-neutral model choice. Providers map tiers to model ids."""
    FAST = "fast"
    CAPABLE = "capable"
    CHEAP = "cheap"

    @classmethod
    def parse(cls, value: str) -> ModelTier:
        """Parse a tier name or a Claude family alias (sonnet/opus/haiku)."""
        normalized = (value or "").strip().lower()
        aliases = {
            "sonnet": cls.FAST,
            "opus": cls.CAPABLE,
            "haiku": cls.CHEAP,
        }
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError:
            valid = ", ".join(t.value for t in cls)
            raise ValueError(
                f"Unknown model '{value}'. Valid: {valid}"
            ) from None


class PermissionMode(str, Enum):
    """Maps to claude_agent_sdk permission modes."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    BYPASS = "bypassPermissions"
    PLAN = "plan"


class ProviderId(str, Enum):
    """Selectable agent backends."""
    CLAUDE = "claude"
    CODEX = "codex"


class StatusKind(str, Enum):
    """Kinds of status updates delivered to the transport."""
    THINKING = "thinking"
    TOOL = "tool"
    TEXT = "text"
    SEGMENT_END = "segment_end"
    TIMEOUT_CHECK = "timeout_check"
    DONE = "done"


class TimeoutResponse(str, Enum):
    """User answer to a long-running query prompt."""
    NONE = "none"
    CONTINUE = "continue"
    ABORT = "abort"


# Per 1M tokens: (input, output)
MODEL_PRICING: dict[ModelTier, tuple[float, float]] = {
    ModelTier.FAST: (3.0, 15.0),
    ModelTier.CAPABLE: (15.0, 75.0),
    ModelTier.CHEAP: (0.25, 1.25),
}


def _make_id() -> str:
    return uuid.uuid4().hex[:8]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenUsage:
    """Usage reported by a single provider turn."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> TokenUsage:
        """Build from an SDK/CLI usage payload, tolerating missing keys."""
        data = data or {}
        return cls(
            input_tokens=int(data.get("input_tokens", 0) or 0),
            output_tokens=int(data.get("output_tokens", 0) or 0),
            cache_read_tokens=int(
                data.get("cache_read_input_tokens")
                or data.get("cached_input_tokens")
                or 0
            ),
            cache_creation_tokens=int(
                data.get("cache_creation_input_tokens", 0) or 0
            ),
        )


@dataclass
class UsageTotals:
    """Cumulative usage for a session. Only grows until reset()."""
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0

    def add(self, usage: TokenUsage) -> None:
        self.input_tokens += max(usage.input_tokens, 0)
        self.output_tokens += max(usage.output_tokens, 0)
        self.cache_read_tokens += max(usage.cache_read_tokens, 0)

    def reset(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_read_tokens = 0


@dataclass
class CostEstimate:
    input_cost: float
    output_cost: float

    @property
    def total(self) -> float:
        return self.input_cost + self.output_cost


@dataclass
class PendingMessage:
    """A message deferred while the session was busy."""
    text: str
    id: str = field(default_factory=_make_id)
    enqueued_at: datetime = field(default_factory=_utcnow)


@dataclass
class ProviderOptions:
    """Logical request options handed to a provider.

    Providers translate these into their runtime's native options and
    ignore the fields they cannot honour (e.g. Codex has no thinking
    budget).
    """
    model: str
    cwd: str
    thinking_tokens: int = 0
    permission_mode: PermissionMode = PermissionMode.BYPASS
    resume: str | None = None
    additional_dirs: list[str] = field(default_factory=list)
    executable_path: str | None = None
    system_prompt: str | None = None
    mcp_servers: dict[str, Any] = field(default_factory=dict)
    # Roots the cwd must live under for this query. Empty means the
    # provider falls back to the roots it was built with.
    allowed_roots: list[str] = field(default_factory=list)
