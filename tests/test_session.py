import json

import pytest

from tether.engine.config import TetherConfig
from tether.engine.errors import (
    NoActiveSessionError,
    NoCheckpointsError,
    ProviderNotAvailableError,
    RewindFailedError,
    RewindUnsupportedError,
    SessionBusyError,
    SessionDirectoryMismatchError,
    SessionNotFoundError,
)
from tether.engine.lifecycle import QueryState
from tether.engine.models import (
    ModelTier,
    ProviderId,
    ProviderOptions,
    TimeoutResponse,
    TokenUsage,
)
from tether.engine.providers.base import AbortToken, Provider
from tether.engine.session import AgentSession


class _StubProvider(Provider):
    def __init__(self, name="claude", rewind=True, rewind_error=None):
        self._name = name
        self._rewind = rewind
        self._rewind_error = rewind_error
        self.rewinds: list[tuple[str, str | None]] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def supports_rewind(self) -> bool:
        return self._rewind

    def resolve_model(self, tier: ModelTier) -> str:
        return tier.value

    async def stream_events(self, prompt, options, abort_token):
        return
        yield

    def is_available(self) -> bool:
        return True

    async def rewind_files(self, checkpoint_id, options):
        if not self._rewind:
            return await super().rewind_files(checkpoint_id, options)
        if self._rewind_error is not None:
            raise self._rewind_error
        self.rewinds.append((checkpoint_id, options.resume))


def _config(tmp_path, **overrides) -> TetherConfig:
    return TetherConfig(
        working_dir=str(tmp_path),
        session_file=str(tmp_path / "session.json"),
        **overrides,
    )


def _session(tmp_path, provider=None, **kwargs) -> AgentSession:
    return AgentSession(_config(tmp_path), provider=provider or _StubProvider(), **kwargs)


def _attach_query(session: AgentSession, *checkpoints: str) -> None:
    options = ProviderOptions(model="fast", cwd=session.working_dir, resume="sess-1")
    session.query_instance = session.provider.create_query("x", options, AbortToken())
    for checkpoint in checkpoints:
        session.checkpoints.push(checkpoint)


def test_new_session_defaults(tmp_path) -> None:
    session = _session(tmp_path)

    assert session.session_id is None
    assert not session.is_active
    assert not session.is_running
    assert session.model == ModelTier.FAST
    assert session.query_state == QueryState.IDLE
    assert session.provider_id == "claude"
    assert session.working_dir == str(tmp_path)
    assert not session.can_undo


def test_default_provider_comes_from_factory(tmp_path) -> None:
    built = []

    def _factory(pid, config):
        built.append(pid)
        return _StubProvider(pid.value)

    session = AgentSession(_config(tmp_path, provider="codex"), provider_factory=_factory)

    assert built == [ProviderId.CODEX]
    assert session.provider_id == "codex"


def test_kill_resets_conversation_but_keeps_model(tmp_path) -> None:
    session = _session(tmp_path)
    session.session_id = "sess-1"
    session.set_model("capable")
    session.plan_mode = True
    session.force_thinking_tokens = 10000
    session.usage.add(TokenUsage(input_tokens=5, output_tokens=3))
    _attach_query(session, "cp-1")

    session.kill()

    assert session.session_id is None
    assert session.model == ModelTier.CAPABLE
    assert session.plan_mode is False
    assert session.force_thinking_tokens is None
    assert session.usage.input_tokens == 0
    assert session.query_instance is None
    assert len(session.checkpoints) == 0


def test_set_model_accepts_aliases(tmp_path) -> None:
    session = _session(tmp_path)

    assert session.set_model("opus") == ModelTier.CAPABLE
    assert session.set_model(ModelTier.CHEAP) == ModelTier.CHEAP
    with pytest.raises(ValueError, match="Unknown model"):
        session.set_model("gpt-9")


def test_set_working_dir_forgets_session(tmp_path) -> None:
    session = _session(tmp_path)
    session.session_id = "sess-1"
    other = tmp_path / "other"
    other.mkdir()

    session.set_working_dir(str(other))

    assert session.session_id is None
    assert session.working_dir == str(other)


def test_set_provider_switches_and_clears(tmp_path) -> None:
    codex = _StubProvider("codex", rewind=False)
    session = _session(tmp_path, provider_factory=lambda pid, config: codex)
    session.session_id = "sess-1"

    ok, message = session.set_provider("codex")

    assert ok
    assert "Switched provider to codex" in message
    assert session.provider is codex
    assert session.session_id is None


def test_set_provider_refusals(tmp_path) -> None:
    session = _session(tmp_path)

    assert session.set_provider("claude") == (False, "Already using provider: claude")

    cleanup = session.start_processing()
    ok, message = session.set_provider("codex")
    cleanup()

    assert not ok
    assert "running" in message
    with pytest.raises(ProviderNotAvailableError, match="gemini"):
        session.set_provider("gemini")


def test_start_processing_cleanup_returns_to_idle(tmp_path) -> None:
    session = _session(tmp_path)

    cleanup = session.start_processing()
    assert session.query_state == QueryState.PROCESSING
    assert session.is_running

    cleanup()
    assert session.query_state == QueryState.IDLE
    assert not session.is_running


def test_stop_when_idle_does_nothing(tmp_path) -> None:
    session = _session(tmp_path)

    assert session.stop() is None
    assert not session.stop_requested


def test_stop_while_running_aborts_token(tmp_path) -> None:
    session = _session(tmp_path)
    session.transition(QueryState.PROCESSING)
    token = AbortToken()
    session.begin_query(token)
    session.transition(QueryState.RUNNING)

    assert session.stop() == "stopped"
    assert token.aborted
    assert session.stop_requested


def test_interrupt_flag_is_consumed_once(tmp_path) -> None:
    session = _session(tmp_path)
    session.mark_interrupt()
    session.stop_requested = True

    assert session.peek_interrupt_flag()
    assert session.consume_interrupt_flag() is True
    assert not session.stop_requested
    assert session.consume_interrupt_flag() is False


def test_set_timeout_response_parses_strings(tmp_path) -> None:
    session = _session(tmp_path)

    session.set_timeout_response("abort")

    assert session.timeout_response == TimeoutResponse.ABORT
    with pytest.raises(ValueError):
        session.set_timeout_response("maybe")


def test_pending_messages_in_order_and_removable(tmp_path) -> None:
    session = _session(tmp_path)
    first = session.add_pending_message("one")
    second = session.add_pending_message("two")

    assert [m.text for m in session.pending_messages()] == ["one", "two"]
    assert session.remove_pending_message(first) == "one"
    assert session.remove_pending_message(first) is None
    assert session.pending_count == 1
    assert session.pending_messages()[0].id == second

    session.clear_pending_messages()
    assert session.pending_count == 0


def test_handoff_context_consumed_once(tmp_path) -> None:
    session = _session(tmp_path)
    session.set_handoff_context("summary")

    assert session.consume_handoff_context() == "summary"
    assert session.consume_handoff_context() is None


def test_estimate_cost_uses_model_pricing(tmp_path) -> None:
    session = _session(tmp_path)
    session.usage.add(TokenUsage(input_tokens=1_000_000, output_tokens=100_000))

    cost = session.estimate_cost()

    assert cost.input_cost == pytest.approx(3.0)
    assert cost.output_cost == pytest.approx(1.5)
    assert cost.total == pytest.approx(4.5)


def test_resume_last_restores_session_id(tmp_path) -> None:
    (tmp_path / "session.json").write_text(json.dumps({
        "version": 1, "session_id": "sess-saved", "working_dir": str(tmp_path),
    }))
    session = _session(tmp_path)

    snapshot = session.resume_last()

    assert snapshot.session_id == "sess-saved"
    assert session.session_id == "sess-saved"
    assert session.last_activity_at is not None


def test_resume_last_failure_leaves_session_untouched(tmp_path) -> None:
    session = _session(tmp_path)
    with pytest.raises(SessionNotFoundError):
        session.resume_last()
    assert session.session_id is None

    (tmp_path / "session.json").write_text(json.dumps({
        "version": 1, "session_id": "sess-saved", "working_dir": "/srv/elsewhere",
    }))
    with pytest.raises(SessionDirectoryMismatchError):
        session.resume_last()
    assert session.session_id is None


def test_resume_last_refused_while_running(tmp_path) -> None:
    session = _session(tmp_path)
    session.start_processing()

    with pytest.raises(SessionBusyError):
        session.resume_last()


@pytest.mark.asyncio
async def test_undo_rewinds_newest_checkpoint(tmp_path) -> None:
    provider = _StubProvider()
    session = _session(tmp_path, provider)
    _attach_query(session, "cp-first-1234", "cp-second-5678")
    assert session.can_undo

    message = await session.undo()

    assert provider.rewinds == [("cp-second-5678", "sess-1")]
    assert message == (
        "Reverted file changes to checkpoint cp-secon...\n1 checkpoint remaining"
    )
    assert session.checkpoints.peek() == "cp-first-1234"


@pytest.mark.asyncio
async def test_undo_without_query_or_checkpoints(tmp_path) -> None:
    session = _session(tmp_path)

    with pytest.raises(NoActiveSessionError):
        await session.undo()

    _attach_query(session)
    with pytest.raises(NoCheckpointsError):
        await session.undo()


@pytest.mark.asyncio
async def test_failed_rewind_keeps_checkpoint(tmp_path) -> None:
    provider = _StubProvider(rewind_error=RewindFailedError("cp-1", "boom"))
    session = _session(tmp_path, provider)
    _attach_query(session, "cp-1")

    with pytest.raises(RewindFailedError):
        await session.undo()

    assert session.checkpoints.peek() == "cp-1"
    assert len(session.checkpoints) == 1


@pytest.mark.asyncio
async def test_unsupported_rewind_keeps_checkpoint(tmp_path) -> None:
    session = _session(tmp_path, _StubProvider("codex", rewind=False))
    _attach_query(session, "cp-1")

    assert not session.can_undo
    with pytest.raises(RewindUnsupportedError):
        await session.undo()
    assert len(session.checkpoints) == 1


@pytest.mark.asyncio
async def test_unexpected_rewind_error_keeps_checkpoint(tmp_path) -> None:
    provider = _StubProvider(rewind_error=RuntimeError("transport closed"))
    session = _session(tmp_path, provider)
    _attach_query(session, "cp-1", "cp-2")

    with pytest.raises(RuntimeError, match="transport closed"):
        await session.undo()

    assert len(session.checkpoints) == 2
    assert session.checkpoints.peek() == "cp-2"
