"""Provider registry: maps provider ids to Provider instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import ProviderNotAvailableError
from ..models import ProviderId
from .base import Provider

if TYPE_CHECKING:
    from ..config import TetherConfig

logger = logging.getLogger(__name__)


def _allowed_roots(config: TetherConfig) -> list[str]:
    return [config.working_dir, *config.allowed_paths]


def parse_provider_id(provider_id: ProviderId | str) -> ProviderId:
    """Normalize a provider id, raising ProviderNotAvailableError if unknown."""
    try:
        return ProviderId(str(getattr(provider_id, "value", provider_id)).lower())
    except ValueError:
        raise ProviderNotAvailableError(
            str(provider_id), [p.value for p in ProviderId]
        ) from None


def create_provider(
    provider_id: ProviderId | str,
    config: TetherConfig,
) -> Provider:
    """Build the provider for *provider_id* from engine config.

    Raises ProviderNotAvailableError for unknown ids.
    """
    from .claude_provider import ClaudeProvider
    from .codex_provider import CodexProvider

    pid = parse_provider_id(provider_id)
    if pid == ProviderId.CLAUDE:
        return ClaudeProvider(cli_path=config.claude_cli_path)
    return CodexProvider(
        command=config.codex_command,
        allowed_paths=_allowed_roots(config),
        temp_paths=config.temp_paths,
    )


class ProviderRegistry:
    """Registry of constructed providers, keyed by ProviderId.

    Sessions that switch back and forth between backends reuse the
    same Provider instance instead of rebuilding it.
    """

    def __init__(self, config: TetherConfig) -> None:
        self._config = config
        self._providers: dict[ProviderId, Provider] = {}

    def get(self, provider_id: ProviderId | str) -> Provider:
        """Return the provider for *provider_id*, creating it on first use."""
        pid = parse_provider_id(provider_id)
        existing = self._providers.get(pid)
        if existing is not None:
            return existing
        provider = create_provider(pid, self._config)
        self._providers[pid] = provider
        logger.info(
            "Provider registered: %s (available=%s)",
            pid.value,
            provider.is_available(),
        )
        return provider

    def list_available(self) -> list[str]:
        """Return ids of providers whose runtime is installed."""
        return [
            pid.value for pid in ProviderId
            if self.get(pid).is_available()
        ]

    async def shutdown_all(self) -> None:
        """Shut down all constructed providers."""
        for pid, provider in self._providers.items():
            try:
                await provider.shutdown()
            except Exception as exc:
                logger.error(
                    "Error shutting down provider '%s': %s",
                    pid.value, exc,
                )
