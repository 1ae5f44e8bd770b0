"""One-line tool status formatting for chat transports.

Registry-based: each tool gets a small formatter that turns its input
dict into a short status line such as ``📄 Read engine/session.py``.

Adding a new tool format requires only a single decorated function:

    @tool_status("MyTool")
    def _status_my_tool(name, args):
        return ToolStatus(icon="🔧", label=name, summary=...)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import urlparse


@dataclass
class ToolStatus:
    icon: str = "🔧"
    label: str = ""
    summary: str = ""

    def render(self) -> str:
        text = f"{self.icon} {self.label}".strip()
        if self.summary:
            text = f"{text} {self.summary}"
        return text


_FORMATTERS: dict[str, Callable[[str, dict[str, Any]], ToolStatus]] = {}


def tool_status(name: str):
    """Decorator to register a status formatter for a given tool name."""

    def decorator(fn: Callable[[str, dict[str, Any]], ToolStatus]):
        _FORMATTERS[name] = fn
        return fn

    return decorator


def format_tool_status(name: str, tool_input: dict[str, Any] | None) -> str:
    """Main entry point. Dispatch to a registered formatter or the default."""
    args = tool_input if isinstance(tool_input, dict) else {}
    formatter = _FORMATTERS.get(name)
    if formatter is None and name.startswith("mcp__"):
        formatter = _status_mcp
    if formatter is None:
        formatter = _status_default
    return formatter(name, args).render()


# ── Helpers ──


def _basename(path: str) -> str:
    """Extract a short display path (last 2 components)."""
    if not path:
        return ""
    parts = path.replace("\\", "/").rstrip("/").split("/")
    return "/".join(parts[-2:]) if len(parts) >= 2 else parts[-1]


def _trunc(text: str, length: int = 60) -> str:
    if not text:
        return ""
    text = " ".join(str(text).split())
    if len(text) <= length:
        return text
    return text[: length - 3] + "..."


# ── Claude tools ──


@tool_status("Read")
def _status_read(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(icon="📄", label="Read", summary=_basename(args.get("file_path", "")))


@tool_status("Write")
def _status_write(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(icon="📝", label="Write", summary=_basename(args.get("file_path", "")))


@tool_status("Edit")
def _status_edit(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(icon="✏️", label="Edit", summary=_basename(args.get("file_path", "")))


@tool_status("NotebookEdit")
def _status_notebook_edit(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(
        icon="📓", label="NotebookEdit",
        summary=_basename(args.get("notebook_path", "")),
    )


@tool_status("Bash")
def _status_bash(name: str, args: dict[str, Any]) -> ToolStatus:
    summary = args.get("description") or args.get("command", "")
    return ToolStatus(icon="$", label="Bash", summary=_trunc(summary))


@tool_status("Glob")
def _status_glob(name: str, args: dict[str, Any]) -> ToolStatus:
    pattern = args.get("pattern", "")
    path = args.get("path", "")
    summary = f"{pattern} in {_basename(path)}" if path else pattern
    return ToolStatus(icon="🔍", label="Glob", summary=summary)


@tool_status("Grep")
def _status_grep(name: str, args: dict[str, Any]) -> ToolStatus:
    summary = f'"{_trunc(args.get("pattern", ""), 30)}"'
    scope = args.get("glob") or _basename(args.get("path", ""))
    if scope:
        summary += f" in {scope}"
    return ToolStatus(icon="🔎", label="Grep", summary=summary)


@tool_status("WebSearch")
def _status_web_search(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(icon="🔍", label="WebSearch", summary=_trunc(args.get("query", ""), 50))


@tool_status("WebFetch")
def _status_web_fetch(name: str, args: dict[str, Any]) -> ToolStatus:
    url = args.get("url", "")
    domain = urlparse(url).netloc if url else ""
    return ToolStatus(icon="🌐", label="WebFetch", summary=domain or _trunc(url, 40))


@tool_status("Task")
def _status_task(name: str, args: dict[str, Any]) -> ToolStatus:
    summary = args.get("description") or args.get("prompt", "")
    return ToolStatus(icon="🔀", label="Task", summary=_trunc(summary, 50))


@tool_status("TodoWrite")
def _status_todo_write(name: str, args: dict[str, Any]) -> ToolStatus:
    todos = args.get("todos") or args.get("items") or []
    if not isinstance(todos, list) or not todos:
        return ToolStatus(icon="☑", label="TodoWrite", summary="empty")
    done = 0
    for todo in todos:
        if isinstance(todo, dict) and (
            todo.get("status") == "completed" or todo.get("completed") is True
        ):
            done += 1
    return ToolStatus(icon="☑", label="TodoWrite", summary=f"{done}/{len(todos)} done")


@tool_status("Skill")
def _status_skill(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(icon="🧩", label="Skill", summary=_trunc(args.get("skill") or args.get("name", ""), 40))


# ── Codex synthetic tools ──


@tool_status("CodexBash")
def _status_codex_bash(name: str, args: dict[str, Any]) -> ToolStatus:
    summary = _trunc(args.get("command", ""))
    exit_code = args.get("exit_code")
    if exit_code not in (None, 0):
        summary = f"{summary} (exit {exit_code})"
    return ToolStatus(icon="$", label="Bash", summary=summary)


@tool_status("CodexFileChange")
def _status_codex_file_change(name: str, args: dict[str, Any]) -> ToolStatus:
    changes = args.get("changes") or []
    paths = [
        _basename(c.get("path", ""))
        for c in changes if isinstance(c, dict) and c.get("path")
    ]
    if len(paths) == 1:
        summary = paths[0]
    elif paths:
        summary = f"{paths[0]} (+{len(paths) - 1} more)"
    else:
        summary = str(args.get("status") or "")
    return ToolStatus(icon="📝", label="Edit", summary=summary)


# ── Fallbacks ──


def _status_mcp(name: str, args: dict[str, Any]) -> ToolStatus:
    parts = name.split("__", 2)
    server = parts[1] if len(parts) > 1 else ""
    tool = parts[2] if len(parts) > 2 else ""
    label = f"{server}:{tool}" if tool else server or name
    return ToolStatus(icon="🔌", label=label)


def _status_default(name: str, args: dict[str, Any]) -> ToolStatus:
    return ToolStatus(icon="🔧", label=name)
