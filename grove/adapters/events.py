"""Message envelopes for the approval channel and the chat stream.

Each envelope is a dataclass whose ``event_type`` becomes the wire
``type`` field; remaining fields are emitted camelCase.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass
class GroveEvent:
    """Base envelope."""
    event_type: str = ""


# ── Approval channel ──


@dataclass
class ToolApprovalRequest(GroveEvent):
    event_type: str = "tool-approval-request"
    approval_id: str = ""
    tool_name: str = ""
    input: Any = None
    timestamp: int = 0


@dataclass
class ApprovalResponse(GroveEvent):
    event_type: str = "approval-response"
    approval_id: str = ""
    approved: bool = False
    reason: str | None = None


@dataclass
class ApprovalAcknowledged(GroveEvent):
    event_type: str = "approval-acknowledged"
    approval_id: str = ""
    handled: bool = False


@dataclass
class ErrorEvent(GroveEvent):
    event_type: str = "error"
    error: str = ""


# ── Chat stream ──


@dataclass
class TextDelta(GroveEvent):
    event_type: str = "text"
    text: str = ""


@dataclass
class ReasoningDelta(GroveEvent):
    event_type: str = "reasoning"
    text: str = ""


@dataclass
class ToolCall(GroveEvent):
    event_type: str = "tool-call"
    tool_call_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolApprovalDecision(GroveEvent):
    event_type: str = "tool-approval"
    tool_call_id: str = ""
    tool_name: str = ""
    approved: bool = False


@dataclass
class Finish(GroveEvent):
    event_type: str = "finish"
    reason: str = "stop"


_EVENT_MAP: dict[str, type[GroveEvent]] = {
    cls.event_type: cls  # type: ignore[misc]
    for cls in (
        ToolApprovalRequest,
        ApprovalResponse,
        ApprovalAcknowledged,
        ErrorEvent,
        TextDelta,
        ReasoningDelta,
        ToolCall,
        ToolApprovalDecision,
        Finish,
    )
}


def event_to_dict(event: GroveEvent) -> dict[str, Any]:
    """Convert an envelope to its JSON wire form.

    ``None`` fields are omitted, except ``input`` which is always sent.
    """
    d: dict[str, Any] = {"type": event.event_type}
    for name in event.__dataclass_fields__:
        if name == "event_type":
            continue
        val = getattr(event, name)
        if val is None and name != "input":
            continue
        d[_camel(name)] = val
    return d


class FrameError(ValueError):
    """An inbound frame is not a recognised envelope."""


def parse_approval_response(data: Any) -> ApprovalResponse:
    """Validate an inbound ``approval-response`` frame."""
    if not isinstance(data, dict):
        raise FrameError("frame must be a JSON object")
    if data.get("type") != ApprovalResponse.event_type:
        raise FrameError(f"unsupported message type: {data.get('type')!r}")
    approval_id = data.get("approvalId")
    if not isinstance(approval_id, str) or not approval_id:
        raise FrameError("approvalId is required")
    approved = data.get("approved")
    if not isinstance(approved, bool):
        raise FrameError("approved must be a boolean")
    reason = data.get("reason")
    return ApprovalResponse(
        approval_id=approval_id,
        approved=approved,
        reason=str(reason) if reason is not None else None,
    )


def event_class(event_type: str) -> type[GroveEvent]:
    return _EVENT_MAP.get(event_type, GroveEvent)
