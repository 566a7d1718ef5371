"""Provider abstraction for text generation."""
from .base import GenerationRequest, ProviderCredentials, TextGenerationProvider
from .registry import ProviderRegistry, build_provider_registry
from .anthropic_provider import AnthropicProvider

__all__ = [
    "GenerationRequest",
    "ProviderCredentials",
    "TextGenerationProvider",
    "ProviderRegistry",
    "build_provider_registry",
    "AnthropicProvider",
]
