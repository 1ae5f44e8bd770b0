"""Exception hierarchy for the session/query engine.

Specific exceptions for each failure mode. Callers (chat transports,
the CLI) match on these types instead of parsing error strings.
"""
from __future__ import annotations


class TetherError(Exception):
    """Base exception for all engine errors."""


class ConcurrencyExceededError(TetherError):
    """The global query gate is saturated."""
    def __init__(self, active: int, limit: int):
        self.active = active
        self.limit = limit
        super().__init__(
            f"Server busy: {active} queries running. Please wait."
        )


class SafetyBlockedError(TetherError):
    """A tool call was rejected by the safety policy."""
    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        if tool_name == "Bash":
            message = f"Unsafe command blocked: {reason}"
        else:
            message = f"File access blocked: {reason}"
        super().__init__(message)


class QueryCancelledError(TetherError):
    """The query was stopped before or while running.

    ``interrupted`` is True when the stop came from a new message
    pre-empting the running one, in which case transports should not
    report "stopped" to the user.
    """
    def __init__(self, reason: str = "Query cancelled", interrupted: bool = False):
        self.reason = reason
        self.interrupted = interrupted
        super().__init__(reason)


class ProviderCrashError(TetherError):
    """The agent runtime failed mid-turn."""
    def __init__(self, provider_name: str, reason: str):
        self.provider_name = provider_name
        self.reason = reason
        super().__init__(f"{provider_name} provider failed: {reason}")


class ProviderExitError(ProviderCrashError):
    """The agent runtime process exited with a non-zero code.

    Ambiguous by nature: the runtime may have finished the turn and
    exited noisily, or crashed mid-turn. The orchestrator decides.
    """
    def __init__(self, provider_name: str, exit_code: int | None, stderr: str = ""):
        self.exit_code = exit_code
        self.stderr = stderr
        detail = f"process exited with code {exit_code}"
        if stderr:
            detail = f"{detail}. {stderr.strip()[:500]}"
        super().__init__(provider_name, detail)


class ProviderNotAvailableError(TetherError):
    """Requested provider id is unknown."""
    def __init__(self, provider_name: str, available: list[str]):
        self.provider_name = provider_name
        self.available = available
        avail_str = ", ".join(available) if available else "none"
        super().__init__(
            f"Unknown provider: {provider_name}. "
            f"Available providers: {avail_str}"
        )


class RewindError(TetherError):
    """Base for undo failures. The checkpoint stays on the stack."""


class RewindFailedError(RewindError):
    """The provider could not restore files to a checkpoint."""
    def __init__(self, checkpoint_id: str, reason: str):
        self.checkpoint_id = checkpoint_id
        self.reason = reason
        super().__init__(
            f"Failed to rewind to checkpoint {checkpoint_id[:8]}: {reason}"
        )


class RewindUnsupportedError(RewindError):
    """The provider has no checkpoint/undo support."""
    def __init__(self, provider_name: str):
        self.provider_name = provider_name
        super().__init__(
            f"Undo is not supported for the {provider_name} provider."
        )


class NoActiveSessionError(TetherError):
    """Undo requested without a query that can rewind."""
    def __init__(self) -> None:
        super().__init__("No active session to undo")


class NoCheckpointsError(TetherError):
    """Undo requested with an empty checkpoint stack."""
    def __init__(self) -> None:
        super().__init__("No checkpoints available")


class SessionPersistenceError(TetherError):
    """Base for resume failures. Session state is never touched."""


class SessionNotFoundError(SessionPersistenceError):
    """No persisted session (missing file or empty session id)."""
    def __init__(self, reason: str = "No saved session found"):
        super().__init__(reason)


class SessionLoadError(SessionPersistenceError):
    """Persisted session file exists but cannot be read."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load session from {path}: {reason}")


class SessionVersionMismatchError(SessionPersistenceError):
    """Persisted session was written by an incompatible schema."""
    def __init__(self, found: int | None, expected: int):
        self.found = found
        self.expected = expected
        super().__init__(
            f"Session version mismatch (found v{found or 0}, "
            f"expected v{expected})"
        )


class SessionDirectoryMismatchError(SessionPersistenceError):
    """Persisted session belongs to another working directory."""
    def __init__(self, saved_dir: str, current_dir: str):
        self.saved_dir = saved_dir
        self.current_dir = current_dir
        super().__init__(f"Session was for different directory: {saved_dir}")


class SessionBusyError(TetherError):
    """A second query was started while one is in flight on the session."""
    def __init__(self) -> None:
        super().__init__("A query is already running in this session")
