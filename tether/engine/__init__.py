"""tether: session/query orchestration for chat-driven coding agents."""
from .models import (
    CostEstimate,
    ModelTier,
    PendingMessage,
    PermissionMode,
    ProviderId,
    ProviderOptions,
    StatusKind,
    TimeoutResponse,
    TokenUsage,
    UsageTotals,
)
from .config import TetherConfig
from .concurrency import ConcurrencyGate
from .checkpoints import CheckpointStack
from .lifecycle import QueryState
from .errors import (
    ConcurrencyExceededError,
    NoActiveSessionError,
    NoCheckpointsError,
    ProviderCrashError,
    ProviderExitError,
    ProviderNotAvailableError,
    QueryCancelledError,
    RewindFailedError,
    RewindUnsupportedError,
    SafetyBlockedError,
    SessionBusyError,
    SessionDirectoryMismatchError,
    SessionLoadError,
    SessionNotFoundError,
    SessionVersionMismatchError,
    TetherError,
)

__all__ = [
    # Session (lazy import to avoid circular deps)
    "AgentSession",
    "SessionRegistry",
    "QueryOrchestrator",
    "QueryContext",
    # Models
    "CostEstimate",
    "ModelTier",
    "PendingMessage",
    "PermissionMode",
    "ProviderId",
    "ProviderOptions",
    "StatusKind",
    "TimeoutResponse",
    "TokenUsage",
    "UsageTotals",
    "QueryState",
    # Config
    "TetherConfig",
    "load_yaml_config",
    "ConcurrencyGate",
    "CheckpointStack",
    # Providers (lazy import)
    "Provider",
    "ClaudeProvider",
    "CodexProvider",
    "create_provider",
    # Errors
    "ConcurrencyExceededError",
    "NoActiveSessionError",
    "NoCheckpointsError",
    "ProviderCrashError",
    "ProviderExitError",
    "ProviderNotAvailableError",
    "QueryCancelledError",
    "RewindFailedError",
    "RewindUnsupportedError",
    "SafetyBlockedError",
    "SessionBusyError",
    "SessionDirectoryMismatchError",
    "SessionLoadError",
    "SessionNotFoundError",
    "SessionVersionMismatchError",
    "TetherError",
]


def __getattr__(name: str):
    if name == "AgentSession":
        from .session import AgentSession
        return AgentSession
    if name == "SessionRegistry":
        from .registry import SessionRegistry
        return SessionRegistry
    if name == "QueryOrchestrator":
        from .orchestrator import QueryOrchestrator
        return QueryOrchestrator
    if name == "QueryContext":
        from .orchestrator import QueryContext
        return QueryContext
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "Provider":
        from .providers.base import Provider
        return Provider
    if name == "ClaudeProvider":
        from .providers.claude_provider import ClaudeProvider
        return ClaudeProvider
    if name == "CodexProvider":
        from .providers.codex_provider import CodexProvider
        return CodexProvider
    if name == "create_provider":
        from .providers.registry import create_provider
        return create_provider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
