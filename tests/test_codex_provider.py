import asyncio
import json
import sys

import pytest

from tether.engine.config import TetherConfig
from tether.engine.errors import (
    ProviderCrashError,
    ProviderExitError,
    RewindUnsupportedError,
)
from tether.engine.events import (
    AssistantText,
    AssistantThinking,
    Result,
    SessionStarted,
    ToolUse,
)
from tether.engine.models import ModelTier, PermissionMode, ProviderOptions
from tether.engine.orchestrator import QueryContext
from tether.engine.providers import codex_provider
from tether.engine.providers.base import AbortToken
from tether.engine.providers.codex_provider import (
    CodexEventTranslator,
    CodexProvider,
    is_path_within,
)
from tether.engine.session import AgentSession


def _item(etype, **item):
    return {"type": etype, "item": item}


def test_agent_message_snapshots_become_deltas() -> None:
    translator = CodexEventTranslator("thread-1")

    first = translator.translate(_item("item.started", id="m1", type="agent_message", text="Hel"))
    second = translator.translate(_item("item.updated", id="m1", type="agent_message", text="Hello"))
    repeat = translator.translate(_item("item.completed", id="m1", type="agent_message", text="Hello"))

    assert first == [AssistantText(session_id="thread-1", delta="Hel")]
    assert second == [AssistantText(session_id="thread-1", delta="lo")]
    assert repeat == []
    assert translator.final_text == "Hello"


def test_reasoning_items_become_thinking() -> None:
    translator = CodexEventTranslator()

    events = translator.translate(_item("item.completed", id="r1", type="reasoning", text="plan it"))

    assert events == [AssistantThinking(delta="plan it")]
    assert translator.final_text == ""


def test_thread_started_sets_session_for_later_events() -> None:
    translator = CodexEventTranslator()

    started = translator.translate({"type": "thread.started", "thread_id": "thread-9"})
    text = translator.translate(_item("item.completed", id="m1", type="agent_message", text="hi"))

    assert started == [SessionStarted(session_id="thread-9")]
    assert text[0].session_id == "thread-9"


def test_command_execution_emitted_once_per_status() -> None:
    translator = CodexEventTranslator()
    started = _item("item.started", id="c1", type="command_execution",
                    command="ls -la", status="in_progress")
    completed = _item("item.completed", id="c1", type="command_execution",
                      command="ls -la", status="completed", exit_code=0)

    assert translator.translate(started) == [ToolUse(
        name="CodexBash",
        input={"command": "ls -la", "status": "in_progress", "exit_code": None},
    )]
    assert translator.translate(_item("item.updated", id="c1", type="command_execution",
                                      command="ls -la", status="in_progress")) == []
    assert translator.translate(completed)[0].input["exit_code"] == 0
    assert translator.translate(completed) == []


def test_mcp_tool_call_is_named_after_server_and_tool() -> None:
    translator = CodexEventTranslator()

    events = translator.translate(_item(
        "item.started", id="t1", type="mcp_tool_call",
        server="ask-user", tool="ask_user", status="in_progress",
        arguments={"question": "A or B?"},
    ))

    assert events[0].name == "mcp__ask-user__ask_user"
    assert events[0].input["query"] == {"question": "A or B?"}


def test_file_change_web_search_and_todo_items() -> None:
    translator = CodexEventTranslator()

    change = translator.translate(_item(
        "item.completed", id="f1", type="file_change", status="completed",
        changes=[{"path": "src/app.py", "kind": "update"}],
    ))
    search = translator.translate(_item("item.started", id="w1", type="web_search", query="asyncio queue"))
    todos = translator.translate(_item(
        "item.completed", id="d1", type="todo_list",
        items=[{"text": "write tests", "completed": True}],
    ))

    assert change[0].name == "CodexFileChange"
    assert search == [ToolUse(name="WebSearch", input={"query": "asyncio queue"})]
    assert todos[0].name == "TodoWrite"
    assert todos[0].input == {"items": [{"text": "write tests", "completed": True}]}


def test_error_item_is_shown_as_text() -> None:
    translator = CodexEventTranslator()

    events = translator.translate(_item("item.completed", id="e1", type="error", message="quota low"))

    assert events == [AssistantText(delta="⚠️ quota low")]


def test_turn_completed_reports_usage() -> None:
    translator = CodexEventTranslator("thread-1")

    events = translator.translate({
        "type": "turn.completed",
        "usage": {"input_tokens": 100, "cached_input_tokens": 40, "output_tokens": 7},
    })

    assert isinstance(events[0], Result)
    assert events[0].usage.input_tokens == 100
    assert events[0].usage.cache_read_tokens == 40
    assert events[0].usage.output_tokens == 7
    assert translator.finish() == []


@pytest.mark.parametrize("event", [
    {"type": "turn.failed", "error": {"message": "model overloaded"}},
    {"type": "error", "message": "model overloaded"},
])
def test_turn_failures_raise_crash(event) -> None:
    with pytest.raises(ProviderCrashError, match="model overloaded"):
        CodexEventTranslator().translate(event)


def test_finish_synthesizes_result_only_after_text() -> None:
    silent = CodexEventTranslator("thread-1")
    talkative = CodexEventTranslator("thread-1")
    talkative.translate(_item("item.completed", id="m1", type="agent_message", text="done"))

    assert silent.finish() == []
    assert talkative.finish() == [Result(session_id="thread-1")]


def test_is_path_within(tmp_path) -> None:
    inner = tmp_path / "project" / "src"
    inner.mkdir(parents=True)

    assert is_path_within(str(inner), [str(tmp_path / "project")])
    assert is_path_within(str(tmp_path), [str(tmp_path)])
    assert not is_path_within(str(tmp_path / "project-other"), [str(tmp_path / "project")])


def test_resolve_model_encodes_reasoning_effort() -> None:
    provider = CodexProvider(default_model="gpt-test")

    assert provider.resolve_model(ModelTier.CHEAP) == "gpt-test::reasoning_effort=low"
    assert provider.resolve_model(ModelTier.FAST) == "gpt-test::reasoning_effort=medium"
    assert provider.resolve_model(ModelTier.CAPABLE) == "gpt-test::reasoning_effort=high"


def test_build_exec_cmd_for_new_turn() -> None:
    provider = CodexProvider(command="codex")
    options = ProviderOptions(
        model="gpt-test::reasoning_effort=high",
        cwd="/srv/app",
        additional_dirs=["/srv/shared"],
    )

    cmd = provider.build_exec_cmd(options)

    assert cmd[1:] == [
        "-c", 'model="gpt-test"',
        "-c", 'model_reasoning_effort="high"',
        "exec", "--json", "--skip-git-repo-check", "--full-auto",
        "-C", "/srv/app",
        "--add-dir", "/srv/shared",
        "-",
    ]


def test_build_exec_cmd_resume_in_plan_mode() -> None:
    provider = CodexProvider(command="codex")
    options = ProviderOptions(
        model="gpt-plain",
        cwd="/srv/app",
        permission_mode=PermissionMode.PLAN,
        resume="thread-1",
    )

    cmd = provider.build_exec_cmd(options)

    assert 'model_reasoning_effort="high"' not in " ".join(cmd)
    assert cmd[cmd.index("--sandbox") + 1] == "read-only"
    assert "--full-auto" not in cmd
    assert cmd[-3:] == ["resume", "thread-1", "-"]


class _FakeReader:
    def __init__(self, lines: list[bytes]):
        self._lines = list(lines)

    async def readline(self) -> bytes:
        if self._lines:
            return self._lines.pop(0)
        return b""


class _FakeWriter:
    def __init__(self):
        self.data = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        return None

    def close(self) -> None:
        self.closed = True


class _FakeProcess:
    def __init__(self, events, exit_code=0, stderr=b""):
        self.stdin = _FakeWriter()
        self.stdout = _FakeReader(
            [json.dumps(e).encode() + b"\n" for e in events]
        )
        self.stderr = _FakeReader([stderr] if stderr else [])
        self.returncode = None
        self.pid = 4242
        self.terminated = False
        self._exit_code = exit_code

    async def wait(self) -> int:
        self.returncode = self._exit_code
        return self._exit_code

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.terminated = True


def _patch_spawn(monkeypatch, proc):
    calls = []

    async def _spawn(*cmd, **kwargs):
        calls.append((cmd, kwargs))
        return proc

    monkeypatch.setattr(codex_provider.asyncio, "create_subprocess_exec", _spawn)
    return calls


async def _collect(provider, options, prompt="fix the bug"):
    return [
        event async for event in provider.stream_events(prompt, options, AbortToken())
    ]


@pytest.mark.asyncio
async def test_stream_events_runs_one_turn(monkeypatch, tmp_path) -> None:
    proc = _FakeProcess([
        {"type": "thread.started", "thread_id": "thread-1"},
        {"type": "turn.started"},
        _item("item.completed", id="m1", type="agent_message", text="Fixed it."),
        {"type": "turn.completed", "usage": {"input_tokens": 5, "output_tokens": 2}},
    ])
    calls = _patch_spawn(monkeypatch, proc)
    provider = CodexProvider(command="codex", allowed_paths=[str(tmp_path)])

    events = await _collect(provider, ProviderOptions(model="gpt-test", cwd=str(tmp_path)))

    assert [type(e) for e in events] == [SessionStarted, AssistantText, Result]
    assert proc.stdin.data == b"fix the bug"
    assert proc.stdin.closed
    assert calls[0][1]["cwd"] == str(tmp_path)
    assert not proc.terminated


@pytest.mark.asyncio
async def test_stream_events_raises_exit_error_with_stderr(monkeypatch, tmp_path) -> None:
    proc = _FakeProcess(
        [{"type": "thread.started", "thread_id": "thread-1"}],
        exit_code=2,
        stderr=b"auth expired\n",
    )
    _patch_spawn(monkeypatch, proc)
    provider = CodexProvider(command="codex")

    with pytest.raises(ProviderExitError) as exc_info:
        await _collect(provider, ProviderOptions(model="gpt-test", cwd=str(tmp_path)))

    assert exc_info.value.exit_code == 2
    assert "auth expired" in exc_info.value.stderr


@pytest.mark.asyncio
async def test_stream_events_rejects_bad_json(monkeypatch, tmp_path) -> None:
    proc = _FakeProcess([])
    proc.stdout = _FakeReader([b"not json\n"])
    _patch_spawn(monkeypatch, proc)

    with pytest.raises(ProviderCrashError, match="Failed to parse Codex event"):
        await _collect(CodexProvider(), ProviderOptions(model="gpt-test", cwd=str(tmp_path)))

    assert proc.terminated


@pytest.mark.asyncio
async def test_stream_events_refuses_cwd_outside_allowed_paths(monkeypatch, tmp_path) -> None:
    calls = _patch_spawn(monkeypatch, _FakeProcess([]))
    provider = CodexProvider(allowed_paths=[str(tmp_path / "allowed")])

    with pytest.raises(ProviderCrashError, match="Working directory is not allowed"):
        await _collect(provider, ProviderOptions(model="gpt-test", cwd="/etc"))

    assert calls == []


@pytest.mark.asyncio
async def test_missing_cli_is_reported(monkeypatch, tmp_path) -> None:
    async def _spawn(*cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(codex_provider.asyncio, "create_subprocess_exec", _spawn)

    with pytest.raises(ProviderCrashError, match="CLI not found"):
        await _collect(CodexProvider(command="codex-missing"),
                       ProviderOptions(model="gpt-test", cwd=str(tmp_path)))


@pytest.mark.asyncio
async def test_codex_refuses_rewind() -> None:
    provider = CodexProvider()

    assert provider.supports_rewind is False
    with pytest.raises(RewindUnsupportedError, match="codex"):
        await provider.rewind_files("cp-1", ProviderOptions(model="m", cwd="/tmp"))


@pytest.mark.asyncio
async def test_spawn_raises_stream_line_limit(monkeypatch, tmp_path) -> None:
    calls = _patch_spawn(monkeypatch, _FakeProcess([{"type": "turn.completed"}]))

    await _collect(CodexProvider(), ProviderOptions(model="gpt-test", cwd=str(tmp_path)))

    assert calls[0][1]["limit"] == codex_provider.STREAM_LINE_LIMIT
    assert codex_provider.STREAM_LINE_LIMIT > 64 * 1024


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
@pytest.mark.asyncio
async def test_event_lines_larger_than_64k_are_read(tmp_path) -> None:
    script = tmp_path / "codex"
    script.write_text(
        "#!/bin/sh\n"
        "cat > /dev/null\n"
        "printf '%s\\n' '{\"type\":\"thread.started\",\"thread_id\":\"thread-big\"}'\n"
        "printf '%s' '{\"type\":\"item.completed\",\"item\":{\"id\":\"c1\","
        "\"type\":\"command_execution\",\"command\":\"cat build.log\","
        "\"status\":\"completed\",\"exit_code\":0,\"aggregated_output\":\"'\n"
        "head -c 200000 /dev/zero | tr '\\000' 'x'\n"
        "printf '%s\\n' '\"}}'\n"
        "printf '%s\\n' '{\"type\":\"item.completed\",\"item\":{\"id\":\"m1\","
        "\"type\":\"agent_message\",\"text\":\"Build log is clean.\"}}'\n"
        "printf '%s\\n' '{\"type\":\"turn.completed\","
        "\"usage\":{\"input_tokens\":1,\"output_tokens\":1}}'\n"
    )
    script.chmod(0o755)
    provider = CodexProvider(command=str(script))

    events = await _collect(provider, ProviderOptions(model="gpt-test", cwd=str(tmp_path)))

    assert [type(e) for e in events] == [SessionStarted, ToolUse, AssistantText, Result]
    assert events[1].input["command"] == "cat build.log"
    assert events[2].delta == "Build log is clean."


@pytest.mark.asyncio
async def test_query_roots_override_construction_roots(monkeypatch, tmp_path) -> None:
    calls = _patch_spawn(monkeypatch, _FakeProcess([{"type": "turn.completed"}]))
    moved_to = tmp_path / "moved"
    moved_to.mkdir()
    provider = CodexProvider(allowed_paths=[str(tmp_path / "original")])
    options = ProviderOptions(
        model="gpt-test", cwd=str(moved_to), allowed_roots=[str(moved_to)]
    )

    await _collect(provider, options)

    assert calls[0][1]["cwd"] == str(moved_to)


@pytest.mark.asyncio
async def test_session_can_query_codex_after_changing_directory(monkeypatch, tmp_path) -> None:
    original = tmp_path / "original"
    moved_to = tmp_path / "moved"
    original.mkdir()
    moved_to.mkdir()
    proc = _FakeProcess([
        _item("item.completed", id="m1", type="agent_message", text="In the new dir."),
        {"type": "turn.completed"},
    ])
    calls = _patch_spawn(monkeypatch, proc)
    config = TetherConfig(
        working_dir=str(original),
        session_file=str(tmp_path / "session.json"),
        streaming_throttle_seconds=0.0,
    )
    session = AgentSession(config, provider=CodexProvider(allowed_paths=[str(original)]))

    async def _on_status(kind, text, segment_id=None):
        return None

    session.set_working_dir(str(moved_to))
    response = await session.send_message("where are you", QueryContext(_on_status))

    assert response == "In the new dir."
    assert calls[0][1]["cwd"] == str(moved_to)
