"""Map engine and provider errors to short user-facing messages."""
from __future__ import annotations

import re

_ERROR_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"timeout", re.IGNORECASE),
     "The operation took too long. Try a simpler request or break it into smaller steps."),
    (re.compile(r"too many requests|rate limit|retry after", re.IGNORECASE),
     "The agent is busy right now. Please wait a moment and try again."),
    (re.compile(r"etimedout|econnreset|enotfound|connection (?:reset|refused)", re.IGNORECASE),
     "Connection issue. Please check your network and try again."),
    (re.compile(r"cancelled|aborted", re.IGNORECASE),
     "Request was cancelled."),
    (re.compile(r"unsafe command|blocked", re.IGNORECASE),
     "That operation isn't allowed for safety reasons."),
    (re.compile(r"file access|outside allowed paths", re.IGNORECASE),
     "The agent can't access that file location."),
    (re.compile(r"authentication|unauthorized|401", re.IGNORECASE),
     "Authentication issue. Please check your credentials."),
)

MAX_GENERIC_LENGTH = 200


def format_user_error(error: BaseException | str) -> str:
    """Convert a technical error into a friendly one-liner."""
    text = str(error)
    for pattern, message in _ERROR_PATTERNS:
        if pattern.search(text):
            return message
    if len(text) > MAX_GENERIC_LENGTH:
        text = text[:MAX_GENERIC_LENGTH] + "..."
    return f"Error: {text or 'An unexpected error occurred'}"
