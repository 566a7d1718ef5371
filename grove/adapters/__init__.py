"""Adapters package - wire envelopes shared by the gateway and the engine."""
from __future__ import annotations

__all__ = [
    "GroveEvent",
    "ToolApprovalRequest",
    "ApprovalResponse",
    "ApprovalAcknowledged",
    "ErrorEvent",
    "TextDelta",
    "ReasoningDelta",
    "ToolCall",
    "ToolApprovalDecision",
    "Finish",
    "FrameError",
    "event_to_dict",
    "parse_approval_response",
]

from grove.adapters.events import (
    ApprovalAcknowledged,
    ApprovalResponse,
    ErrorEvent,
    Finish,
    FrameError,
    GroveEvent,
    ReasoningDelta,
    TextDelta,
    ToolApprovalDecision,
    ToolApprovalRequest,
    ToolCall,
    event_to_dict,
    parse_approval_response,
)
