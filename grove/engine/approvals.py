"""Human-in-the-loop tool approval broker.

A tool call that needs a human decision is registered as a
:class:`PendingApproval` holding a future. The request is broadcast to
every subscribed listener (one per approval WebSocket); the first
``respond()`` settles the future, and an armed timer fails it with
:class:`ApprovalTimeoutError` if nobody answers in time.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Iterable

from grove.adapters.events import ToolApprovalRequest, event_to_dict

from .errors import ApprovalTimeoutError, BrokerClosedError, SubscriberLimitError

logger = logging.getLogger(__name__)

SAFE_TOOLS = frozenset({
    "Read", "Glob", "Grep", "LS", "WebSearch", "WebFetch", "Task", "TodoWrite",
})
APPROVAL_REQUIRED_TOOLS = frozenset({
    "Edit", "Write", "Bash", "MultiEdit", "NotebookEdit",
})


@dataclass
class PendingApproval:
    approval_id: str
    tool_name: str
    input: Any
    created_at: int  # epoch milliseconds
    decision: asyncio.Future  # Future[bool]
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)

    def to_event(self) -> ToolApprovalRequest:
        return ToolApprovalRequest(
            approval_id=self.approval_id,
            tool_name=self.tool_name,
            input=self.input,
            timestamp=self.created_at,
        )


class ApprovalSubscription:
    """One listener's bounded inbox of outbound envelopes.

    ``get()`` returns ``None`` once the subscription is closed.
    """

    _ids = itertools.count(1)

    def __init__(self, queue_size: int) -> None:
        self.id = next(self._ids)
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue(maxsize=queue_size)
        self.closed = False

    def offer(self, message: dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            logger.warning(
                "Approval subscriber %d is full; dropping %s", self.id, message.get("type"),
            )
            return False

    async def get(self) -> dict[str, Any] | None:
        if self.closed and self._queue.empty():
            return None
        return await self._queue.get()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self) -> dict[str, Any]:
        message = await self.get()
        if message is None:
            raise StopAsyncIteration
        return message


class ToolApprovalBroker:
    """Registry of pending approvals plus a bounded set of listeners."""

    def __init__(
        self,
        timeout_seconds: float = 300.0,
        max_subscribers: int = 32,
        queue_size: int = 256,
        safe_tools: Iterable[str] | None = None,
        required_tools: Iterable[str] | None = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._max_subscribers = max_subscribers
        self._queue_size = queue_size
        self._safe_tools = frozenset(safe_tools) if safe_tools is not None else SAFE_TOOLS
        self._required_tools = (
            APPROVAL_REQUIRED_TOOLS | frozenset(required_tools or ())
        )
        self._pending: dict[str, PendingApproval] = {}
        self._subscribers: dict[int, ApprovalSubscription] = {}
        self._closed = False

    # ── Policy ──

    @property
    def safe_tools(self) -> frozenset[str]:
        return self._safe_tools

    def is_safe(self, tool_name: str) -> bool:
        return tool_name in self._safe_tools

    def requires_approval(self, tool_name: str) -> bool:
        return tool_name in self._required_tools and tool_name not in self._safe_tools

    async def check(self, tool_name: str, tool_input: Any) -> bool:
        """Gate one tool call: safe and unknown tools pass, the rest ask a human.

        A timed-out request counts as a denial and is not retried.
        """
        if not self.requires_approval(tool_name):
            return True
        try:
            return await self.request_approval(tool_name, tool_input)
        except ApprovalTimeoutError:
            logger.warning("Approval for %s timed out; denying", tool_name)
            return False

    # ── Requests ──

    def open_request(self, tool_name: str, tool_input: Any) -> PendingApproval:
        """Register and broadcast a request; the caller awaits ``decision``."""
        if self._closed:
            raise BrokerClosedError()
        loop = asyncio.get_running_loop()
        now_ms = int(time.time() * 1000)
        approval_id = f"approval_{now_ms}_{secrets.token_hex(4)}"
        pending = PendingApproval(
            approval_id=approval_id,
            tool_name=tool_name,
            input=tool_input,
            created_at=now_ms,
            decision=loop.create_future(),
        )
        pending.timer = loop.call_later(self._timeout, self._expire, approval_id)
        self._pending[approval_id] = pending
        logger.info(
            "Approval requested id=%s tool=%s listeners=%d",
            approval_id, tool_name, len(self._subscribers),
        )
        self._broadcast(event_to_dict(pending.to_event()))
        return pending

    async def request_approval(self, tool_name: str, tool_input: Any) -> bool:
        pending = self.open_request(tool_name, tool_input)
        try:
            return await pending.decision
        finally:
            self._settle(pending.approval_id)

    def respond(self, approval_id: str, approved: bool, reason: str | None = None) -> bool:
        """Settle *approval_id*; False when it is unknown or already settled."""
        pending = self._settle(approval_id)
        if pending is None or pending.decision.done():
            logger.info("Approval response for unknown id=%s", approval_id)
            return False
        pending.decision.set_result(bool(approved))
        logger.info(
            "Approval resolved id=%s tool=%s approved=%s reason=%s",
            approval_id, pending.tool_name, approved, reason or "",
        )
        return True

    def pending(self) -> list[PendingApproval]:
        return list(self._pending.values())

    def _settle(self, approval_id: str) -> PendingApproval | None:
        pending = self._pending.pop(approval_id, None)
        if pending is not None and pending.timer is not None:
            pending.timer.cancel()
        return pending

    def _expire(self, approval_id: str) -> None:
        pending = self._pending.pop(approval_id, None)
        if pending is None or pending.decision.done():
            return
        pending.decision.set_exception(
            ApprovalTimeoutError(approval_id, pending.tool_name, self._timeout)
        )

    # ── Subscribers ──

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> ApprovalSubscription:
        """Add a listener and replay every pending request to it."""
        if self._closed:
            raise BrokerClosedError()
        if len(self._subscribers) >= self._max_subscribers:
            raise SubscriberLimitError(self._max_subscribers)
        subscription = ApprovalSubscription(self._queue_size)
        self._subscribers[subscription.id] = subscription
        for pending in self._pending.values():
            subscription.offer(event_to_dict(pending.to_event()))
        logger.info(
            "Approval listener %d connected (listeners=%d pending=%d)",
            subscription.id, len(self._subscribers), len(self._pending),
        )
        return subscription

    def unsubscribe(self, subscription: ApprovalSubscription) -> None:
        """Remove a listener. Pending approvals are left untouched."""
        if self._subscribers.pop(subscription.id, None) is not None:
            logger.info(
                "Approval listener %d disconnected (listeners=%d)",
                subscription.id, len(self._subscribers),
            )
        subscription.close()

    def _broadcast(self, message: dict[str, Any]) -> None:
        for subscription in list(self._subscribers.values()):
            subscription.offer(message)

    # ── Shutdown ──

    async def drain(self) -> None:
        """Fail every pending decision and close every listener."""
        self._closed = True
        pending = list(self._pending.values())
        self._pending.clear()
        for item in pending:
            if item.timer is not None:
                item.timer.cancel()
            if not item.decision.done():
                item.decision.set_exception(BrokerClosedError())
        for subscription in list(self._subscribers.values()):
            subscription.close()
        self._subscribers.clear()
        if pending:
            logger.info("Approval broker drained (%d pending failed)", len(pending))
        # Let awaiting tasks observe their failures.
        await asyncio.sleep(0)
