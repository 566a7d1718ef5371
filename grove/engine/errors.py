"""Exception hierarchy for the grove service.

Every failure carries a ``kind`` so the gateway can report it as a
structured ``{error, kind, detail}`` body. Nothing here is fatal to the
process; each error is scoped to one request or session.
"""
from __future__ import annotations

from typing import Any


class GroveError(Exception):
    """Base exception for all grove failures."""

    kind = "internal"

    def __init__(self, message: str, detail: Any = None) -> None:
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "kind": self.kind}
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


class ValidationError(GroveError):
    """Required input missing or malformed. Raised before any side effect."""

    kind = "validation"


class NotFoundError(GroveError):
    """Unknown workspace id, missing file, or similar lookup miss."""

    kind = "not_found"


class ExternalToolError(GroveError):
    """An external command exited non-zero or could not be started."""

    kind = "external_tool"

    def __init__(
        self,
        args: list[str] | tuple[str, ...],
        returncode: int,
        stderr: str,
    ) -> None:
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr
        tool = self.args_list[0] if self.args_list else "command"
        super().__init__(
            f"{tool} exited with code {returncode}",
            detail=stderr.strip() or None,
        )


class AuthError(GroveError):
    """OAuth failure the caller should answer by prompting a re-login."""

    kind = "auth"


class OAuthFlowExpiredError(AuthError):
    """A pending OAuth flow outlived its time-to-live."""

    kind = "timeout"

    def __init__(self, state: str, ttl_seconds: float) -> None:
        self.state = state
        self.ttl_seconds = ttl_seconds
        super().__init__("OAuth flow expired. Please start login again.")


class OperationTimeoutError(GroveError):
    """A bounded wait ran out."""

    kind = "timeout"

    def __init__(self, operation: str, timeout_seconds: float) -> None:
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds}s")


class ApprovalTimeoutError(OperationTimeoutError):
    """No listener decided a tool approval in time."""

    def __init__(self, approval_id: str, tool_name: str, timeout_seconds: float) -> None:
        self.approval_id = approval_id
        self.tool_name = tool_name
        super().__init__(f"Tool approval for '{tool_name}'", timeout_seconds)


class StorageError(GroveError):
    """A persisted document could not be read or written."""

    kind = "storage"


class ApprovalBrokerError(GroveError):
    """Base class for approval channel failures."""


class SubscriberLimitError(ApprovalBrokerError):
    """The approval channel already has its maximum number of listeners."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Approval channel is full ({limit} listeners)")


class BrokerClosedError(ApprovalBrokerError):
    """The broker was drained while a decision was still pending."""

    def __init__(self) -> None:
        super().__init__("Approval broker is shut down")


class ProviderError(GroveError):
    """The text-generation backend rejected a request or broke off a stream."""

    kind = "external_tool"

    def __init__(self, message: str, status: int | None = None, detail: Any = None) -> None:
        self.status = status
        super().__init__(message, detail=detail)
