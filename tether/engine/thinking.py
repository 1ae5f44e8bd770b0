"""Thinking budget resolution from message keywords."""
from __future__ import annotations

from collections.abc import Iterable

DEFAULT_THINKING_KEYWORDS: tuple[str, ...] = ("think", "pensa", "ragiona")
DEFAULT_DEEP_KEYWORDS: tuple[str, ...] = ("ultrathink", "think hard", "pensa bene")

NORMAL_BUDGET = 10000
DEEP_BUDGET = 50000


def get_thinking_level(
    message: str,
    keywords: Iterable[str] = DEFAULT_THINKING_KEYWORDS,
    deep_keywords: Iterable[str] = DEFAULT_DEEP_KEYWORDS,
    *,
    budget: int = NORMAL_BUDGET,
    deep_budget: int = DEEP_BUDGET,
) -> int:
    """Return the thinking-token budget a message asks for.

    Deep keywords are checked first because they usually contain a
    normal keyword ("think hard" contains "think").
    """
    lowered = message.lower()
    if any(k.lower() in lowered for k in deep_keywords):
        return deep_budget
    if any(k.lower() in lowered for k in keywords):
        return budget
    return 0


def thinking_label(tokens: int) -> str:
    """Short label for logs and the CLI status line."""
    return {0: "off", NORMAL_BUDGET: "normal", DEEP_BUDGET: "deep"}.get(
        tokens, str(tokens)
    )
