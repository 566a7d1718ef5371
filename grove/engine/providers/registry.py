"""Provider registry: maps provider names to provider instances."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import NotFoundError
from .base import TextGenerationProvider

if TYPE_CHECKING:
    from ..config import GroveConfig

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Named text-generation backends; ``/chat`` picks one by config."""

    def __init__(self) -> None:
        self._providers: dict[str, TextGenerationProvider] = {}

    def register(self, name: str, provider: TextGenerationProvider) -> None:
        if name in self._providers:
            logger.warning("Replacing provider %s", name)
        self._providers[name] = provider
        logger.info("Provider registered: %s (available=%s)", name, provider.is_available())

    def get(self, name: str) -> TextGenerationProvider | None:
        return self._providers.get(name)

    def require(self, name: str) -> TextGenerationProvider:
        provider = self._providers.get(name)
        if provider is None:
            raise NotFoundError(
                f"Provider '{name}' is not registered",
                detail=f"registered: {', '.join(self._providers) or 'none'}",
            )
        return provider

    def list_available(self) -> list[str]:
        return [name for name, p in self._providers.items() if p.is_available()]

    async def shutdown_all(self) -> None:
        for name, provider in self._providers.items():
            try:
                await provider.shutdown()
            except Exception:
                logger.exception("Provider %s failed to shut down", name)


def build_provider_registry(config: GroveConfig | None = None) -> ProviderRegistry:
    from .anthropic_provider import AnthropicProvider

    registry = ProviderRegistry()
    base_url = config.api_base_url if config is not None else None
    registry.register("anthropic", AnthropicProvider(base_url=base_url))
    return registry
