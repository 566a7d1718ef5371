"""Abstract base for text-generation providers.

A provider turns a message list plus a system prompt into a stream of
typed events (text, reasoning, tool calls, finish). The chat pipeline in
the gateway only ever talks to this interface.
"""
from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from grove.adapters.events import GroveEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderCredentials:
    """Bearer token from the OAuth manager, or a stored API key."""
    access_token: str | None = None
    api_key: str | None = None


@dataclass
class GenerationRequest:
    messages: list[dict[str, Any]]
    system_prompt: str
    model: str
    max_tokens: int = 8192
    # None disables extended thinking.
    thinking_budget: int | None = None
    tools: list[dict[str, Any]] = field(default_factory=list)


class TextGenerationProvider(abc.ABC):
    """Abstract provider interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'anthropic')."""

    @abc.abstractmethod
    def stream(
        self,
        request: GenerationRequest,
        credentials: ProviderCredentials,
    ) -> AsyncIterator[GroveEvent]:
        """Stream events for one generation.

        Yields TextDelta / ReasoningDelta / ToolCall envelopes and ends with
        a Finish. Raises ProviderError (or AuthError for rejected
        credentials) when the backend fails.
        """

    def is_available(self) -> bool:
        """Whether the provider can be used at all."""
        return True

    async def shutdown(self) -> None:
        """Release any held resources. Default: no-op."""
