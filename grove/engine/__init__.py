"""Grove engine: worktree workspaces, diffs, OAuth, approvals and terminals."""
from .errors import (
    ApprovalBrokerError,
    ApprovalTimeoutError,
    AuthError,
    BrokerClosedError,
    ExternalToolError,
    GroveError,
    NotFoundError,
    OAuthFlowExpiredError,
    OperationTimeoutError,
    ProviderError,
    StorageError,
    SubscriberLimitError,
    ValidationError,
)
from .process import CommandResult, ProcessRunner
from .diff import DiffEngine
from .workspace_store import WorkspaceStore
from .workspaces import CreateWorkspaceRequest, ScriptResult, WorkspaceManager
from .oauth import CredentialStore, OAuthManager, OAuthSettings, PendingFlowStore, TokenCipher
from .approvals import ToolApprovalBroker
from .terminal import PtySession, TerminalSessionManager
from .review import CodeReview, ReviewService
from .config import GroveConfig

__all__ = [
    # Errors
    "GroveError",
    "ValidationError",
    "NotFoundError",
    "ExternalToolError",
    "AuthError",
    "OAuthFlowExpiredError",
    "OperationTimeoutError",
    "ApprovalTimeoutError",
    "StorageError",
    "ApprovalBrokerError",
    "SubscriberLimitError",
    "BrokerClosedError",
    "ProviderError",
    # Components
    "CommandResult",
    "ProcessRunner",
    "DiffEngine",
    "WorkspaceStore",
    "CreateWorkspaceRequest",
    "ScriptResult",
    "WorkspaceManager",
    "CredentialStore",
    "OAuthManager",
    "OAuthSettings",
    "PendingFlowStore",
    "TokenCipher",
    "ToolApprovalBroker",
    "PtySession",
    "TerminalSessionManager",
    "CodeReview",
    "ReviewService",
    # Config
    "GroveConfig",
    "load_yaml_config",
]


def __getattr__(name: str):
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
