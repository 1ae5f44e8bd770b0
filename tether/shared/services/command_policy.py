"""Default safety policy for agent tool calls.

Commands are checked against a regex blacklist: built-in patterns for
destructive shell commands plus one regex per line from
<workspace>/.tether/command_blacklist.txt. File tools are limited to the
working directory and any extra allowed paths.
"""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

TETHER_DIRNAME = ".tether"
BLACKLIST_FILENAME = "command_blacklist.txt"

# (pattern, human-readable reason)
DEFAULT_BLACKLIST_PATTERNS: tuple[tuple[str, str], ...] = (
    (r"\brm\s+(?:-[a-z]*r[a-z]*f[a-z]*|-[a-z]*f[a-z]*r[a-z]*)\s+(?:/|~|\$HOME)(?:\s|$|\*)",
     "recursive delete of root or home"),
    (r"\bsudo\s+rm\b", "sudo rm"),
    (r":\(\)\s*\{\s*:\|:&\s*\};:", "fork bomb"),
    (r"\bmkfs(?:\.\w+)?\b", "filesystem format"),
    (r"\bdd\s+[^|;&]*\bof=/dev/", "raw write to a device"),
    (r">\s*/dev/sd[a-z]", "raw write to a disk"),
    (r"\bchmod\s+-R\s+777\s+/(?:\s|$)", "recursive chmod of root"),
    (r"\b(?:shutdown|reboot|halt|poweroff)\b", "system power command"),
    (r"\bgit\s+push\s+[^|;&]*--force\b[^|;&]*\b(?:main|master)\b", "force push to main branch"),
)


@dataclass
class BlacklistRule:
    pattern: re.Pattern[str]
    reason: str


def _resolve(path: str) -> str:
    return os.path.realpath(os.path.expanduser(path))


class CommandPolicy:
    """check_command_safety() and is_path_allowed() for the orchestrator."""

    def __init__(
        self,
        working_dir: Path | str,
        allowed_paths: list[str] | None = None,
    ) -> None:
        self._working_dir = Path(working_dir)
        self._allowed_paths = [str(self._working_dir), *(allowed_paths or [])]
        self._blacklist_path = self._working_dir / TETHER_DIRNAME / BLACKLIST_FILENAME
        self._rules = self._load_rules()

    @property
    def blacklist_path(self) -> Path:
        return self._blacklist_path

    @property
    def allowed_paths(self) -> list[str]:
        return list(self._allowed_paths)

    def _load_rules(self) -> list[BlacklistRule]:
        rules = [
            BlacklistRule(re.compile(p, re.IGNORECASE), reason)
            for p, reason in DEFAULT_BLACKLIST_PATTERNS
        ]
        custom = self._read_patterns(self._blacklist_path)
        for pattern in custom:
            try:
                rules.append(BlacklistRule(
                    re.compile(pattern, re.IGNORECASE | re.MULTILINE),
                    f"matches workspace blacklist: {pattern}",
                ))
            except re.error:
                logger.warning("Invalid command policy regex ignored: %s", pattern)
        logger.debug(
            "Command policy loaded: %d default + %d custom patterns from %s",
            len(DEFAULT_BLACKLIST_PATTERNS), len(custom), self._blacklist_path,
        )
        return rules

    @staticmethod
    def _read_patterns(path: Path) -> list[str]:
        if not path.exists():
            return []
        lines: list[str] = []
        for line in path.read_text(encoding="utf-8").splitlines():
            entry = line.strip()
            if not entry or entry.startswith("#"):
                continue
            lines.append(entry)
        return lines

    def reload(self) -> None:
        """Re-read the workspace blacklist file."""
        self._rules = self._load_rules()

    def check_command_safety(self, command: str) -> tuple[bool, str]:
        """Return (True, "") if *command* may run, else (False, reason)."""
        for rule in self._rules:
            if rule.pattern.search(command):
                logger.warning("Command blocked (%s): %s", rule.reason, command[:200])
                return False, f"Blocked pattern: {rule.reason}"
        return True, ""

    def is_path_allowed(self, path: str) -> bool:
        """True if *path* resolves inside one of the allowed directories."""
        if not path:
            return False
        expanded = os.path.expanduser(path)
        if not os.path.isabs(expanded):
            expanded = os.path.join(str(self._working_dir), expanded)
        resolved = _resolve(expanded)
        for root in self._allowed_paths:
            root_resolved = _resolve(root)
            if resolved == root_resolved or resolved.startswith(
                root_resolved.rstrip(os.sep) + os.sep
            ):
                return True
        return False
