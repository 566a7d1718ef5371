"""Anthropic Messages API provider (streaming, over aiohttp)."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

import aiohttp

from grove.adapters.events import (
    Finish,
    GroveEvent,
    ReasoningDelta,
    TextDelta,
    ToolCall,
)

from ..errors import AuthError, ProviderError
from .base import GenerationRequest, ProviderCredentials, TextGenerationProvider

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
API_VERSION = "2023-06-01"
OAUTH_BETA = "oauth-2025-04-20"


@dataclass
class _ToolBlock:
    tool_call_id: str
    tool_name: str
    partial_json: list[str] = field(default_factory=list)


class MessageStreamParser:
    """Turns decoded Messages API stream events into grove envelopes."""

    def __init__(self) -> None:
        self._tool_blocks: dict[int, _ToolBlock] = {}
        self._stop_reason = "stop"
        self.finished = False

    def feed(self, event: dict[str, Any]) -> list[GroveEvent]:
        kind = event.get("type")
        if kind == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._tool_blocks[int(event.get("index", 0))] = _ToolBlock(
                    tool_call_id=str(block.get("id", "")),
                    tool_name=str(block.get("name", "")),
                )
            return []

        if kind == "content_block_delta":
            delta = event.get("delta") or {}
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return [TextDelta(text=delta.get("text", ""))]
            if delta_type == "thinking_delta":
                return [ReasoningDelta(text=delta.get("thinking", ""))]
            if delta_type == "input_json_delta":
                block = self._tool_blocks.get(int(event.get("index", 0)))
                if block is not None:
                    block.partial_json.append(delta.get("partial_json", ""))
            return []

        if kind == "content_block_stop":
            block = self._tool_blocks.pop(int(event.get("index", 0)), None)
            if block is None:
                return []
            raw = "".join(block.partial_json).strip()
            try:
                tool_input = json.loads(raw) if raw else {}
            except ValueError:
                logger.warning("Unparseable tool input for %s", block.tool_name)
                tool_input = {"_raw": raw}
            return [ToolCall(
                tool_call_id=block.tool_call_id,
                tool_name=block.tool_name,
                input=tool_input,
            )]

        if kind == "message_delta":
            stop_reason = (event.get("delta") or {}).get("stop_reason")
            if stop_reason:
                self._stop_reason = stop_reason
            return []

        if kind == "message_stop":
            self.finished = True
            return [Finish(reason=self._stop_reason)]

        if kind == "error":
            error = event.get("error") or {}
            raise ProviderError(
                error.get("message") or "Stream error",
                detail=error.get("type"),
            )
        return []


def build_payload(request: GenerationRequest) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "model": request.model,
        "max_tokens": request.max_tokens,
        "system": request.system_prompt,
        "messages": request.messages,
        "stream": True,
    }
    if request.thinking_budget:
        payload["thinking"] = {"type": "enabled", "budget_tokens": request.thinking_budget}
    if request.tools:
        payload["tools"] = request.tools
    return payload


def build_headers(credentials: ProviderCredentials) -> dict[str, str]:
    headers = {
        "content-type": "application/json",
        "anthropic-version": API_VERSION,
        "accept": "text/event-stream",
    }
    if credentials.api_key:
        headers["x-api-key"] = credentials.api_key
    elif credentials.access_token:
        headers["authorization"] = f"Bearer {credentials.access_token}"
        headers["anthropic-beta"] = OAUTH_BETA
    else:
        raise AuthError("No credentials available for the Anthropic API")
    return headers


class AnthropicProvider(TextGenerationProvider):
    """Streams ``POST /v1/messages`` and relays server-sent events."""

    def __init__(self, base_url: str | None = None, timeout_seconds: float = 600.0) -> None:
        self._base_url = (base_url or DEFAULT_BASE_URL).rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds, sock_connect=30)

    @property
    def name(self) -> str:
        return "anthropic"

    async def stream(
        self,
        request: GenerationRequest,
        credentials: ProviderCredentials,
    ) -> AsyncIterator[GroveEvent]:
        headers = build_headers(credentials)
        payload = build_payload(request)
        parser = MessageStreamParser()
        logger.info(
            "Anthropic request model=%s messages=%d max_tokens=%d thinking=%s tools=%d",
            request.model, len(request.messages), request.max_tokens,
            request.thinking_budget, len(request.tools),
        )
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(
                    f"{self._base_url}/v1/messages", json=payload, headers=headers,
                ) as resp:
                    if resp.status in (401, 403):
                        raise AuthError(
                            "Anthropic API rejected the credentials",
                            detail=(await resp.text())[:500] or None,
                        )
                    if resp.status >= 300:
                        raise ProviderError(
                            f"Anthropic API returned {resp.status}",
                            status=resp.status,
                            detail=(await resp.text())[:500] or None,
                        )
                    async for raw_line in resp.content:
                        line = raw_line.decode("utf-8", errors="replace").strip()
                        if not line.startswith("data:"):
                            continue
                        data = line[len("data:"):].strip()
                        if not data:
                            continue
                        try:
                            event = json.loads(data)
                        except ValueError:
                            logger.debug("Skipping non-JSON stream line")
                            continue
                        for envelope in parser.feed(event):
                            yield envelope
        except aiohttp.ClientError as exc:
            raise ProviderError("Anthropic API unreachable", detail=str(exc)) from exc

        if not parser.finished:
            raise ProviderError("Anthropic stream ended before message_stop")
