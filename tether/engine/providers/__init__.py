"""Agent runtime providers behind one streaming interface."""
from .base import AbortToken, Provider, ProviderQuery
from .registry import ProviderRegistry, create_provider
from .claude_provider import ClaudeProvider
from .codex_provider import CodexEventTranslator, CodexProvider

__all__ = [
    "AbortToken",
    "Provider",
    "ProviderQuery",
    "ProviderRegistry",
    "create_provider",
    "ClaudeProvider",
    "CodexEventTranslator",
    "CodexProvider",
]
