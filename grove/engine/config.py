"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via GROVE_* env vars, or a
YAML file (see yaml_config.py) layered on top.
"""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from .oauth import PENDING_FLOWS_FILENAME, OAuthSettings

logger = logging.getLogger(__name__)


def _grove_home() -> Path:
    return Path.home() / ".grove"


@dataclass
class GroveConfig:
    """Gateway and engine configuration."""

    # Listening address
    host: str = "127.0.0.1"
    port: int = 4545

    # Where worktrees and cloned repositories are created
    workspaces_root: str = str(Path.home() / "grove" / "workspaces")
    repos_root: str = str(Path.home() / "grove" / "repos")
    # Workspace registry document
    state_path: str = str(_grove_home() / "state.json")

    # OAuth storage and lifetimes
    oauth_dir: str = str(_grove_home())
    pending_flows_path: str = str(Path(tempfile.gettempdir()) / PENDING_FLOWS_FILENAME)
    oauth_flow_ttl_seconds: float = 600.0
    token_refresh_threshold_seconds: float = 300.0
    oauth: OAuthSettings = field(default_factory=OAuthSettings)

    # Tool approvals
    approval_timeout_seconds: float = 300.0
    max_approval_subscribers: int = 32
    # Extra tool names that always need a human decision.
    approval_required_tools: list[str] = field(default_factory=list)

    # External command limits. Set to 0 (or a negative value) to disable.
    git_timeout_seconds: float = 120.0
    clone_timeout_seconds: float = 900.0
    script_timeout_seconds: float = 900.0

    # Terminal
    shell: str = "/bin/sh"
    terminal_cols: int = 120
    terminal_rows: int = 30

    # Text generation
    provider: str = "anthropic"
    default_model: str = "claude-sonnet-4-5"
    review_model: str = "claude-haiku-4-5"
    api_base_url: str = "https://api.anthropic.com"

    # Logging
    log_level: str = "INFO"
    log_dir: str = str(_grove_home() / "logs")

    @property
    def credentials_path(self) -> Path:
        return Path(self.oauth_dir).expanduser() / "oauth-credentials.json"

    @staticmethod
    def timeout_or_none(value: float) -> float | None:
        return value if value > 0 else None

    @classmethod
    def from_env(cls) -> GroveConfig:
        """Load configuration from GROVE_* environment variables."""
        grove_vars = sorted(k for k in os.environ if k.startswith("GROVE_"))
        if grove_vars:
            logger.info("GroveConfig.from_env: GROVE_* env overrides: %s", ", ".join(grove_vars))
        else:
            logger.debug("GroveConfig.from_env: no GROVE_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            host=os.getenv("GROVE_HOST", defaults.host),
            port=int(os.getenv("GROVE_PORT", str(defaults.port))),
            workspaces_root=os.getenv("GROVE_WORKSPACES_ROOT", defaults.workspaces_root),
            repos_root=os.getenv("GROVE_REPOS_ROOT", defaults.repos_root),
            state_path=os.getenv("GROVE_STATE_PATH", defaults.state_path),
            oauth_dir=os.getenv("GROVE_OAUTH_DIR", defaults.oauth_dir),
            pending_flows_path=os.getenv(
                "GROVE_PENDING_FLOWS_PATH", defaults.pending_flows_path
            ),
            oauth_flow_ttl_seconds=float(os.getenv(
                "GROVE_OAUTH_FLOW_TTL", str(defaults.oauth_flow_ttl_seconds)
            )),
            token_refresh_threshold_seconds=float(os.getenv(
                "GROVE_TOKEN_REFRESH_THRESHOLD",
                str(defaults.token_refresh_threshold_seconds),
            )),
            approval_timeout_seconds=float(os.getenv(
                "GROVE_APPROVAL_TIMEOUT", str(defaults.approval_timeout_seconds)
            )),
            max_approval_subscribers=int(os.getenv(
                "GROVE_MAX_APPROVAL_SUBSCRIBERS", str(defaults.max_approval_subscribers)
            )),
            git_timeout_seconds=float(os.getenv(
                "GROVE_GIT_TIMEOUT", str(defaults.git_timeout_seconds)
            )),
            clone_timeout_seconds=float(os.getenv(
                "GROVE_CLONE_TIMEOUT", str(defaults.clone_timeout_seconds)
            )),
            script_timeout_seconds=float(os.getenv(
                "GROVE_SCRIPT_TIMEOUT", str(defaults.script_timeout_seconds)
            )),
            shell=os.getenv("GROVE_SHELL") or os.getenv("SHELL") or defaults.shell,
            provider=os.getenv("GROVE_PROVIDER", defaults.provider),
            default_model=os.getenv("GROVE_MODEL", defaults.default_model),
            review_model=os.getenv("GROVE_REVIEW_MODEL", defaults.review_model),
            log_level=os.getenv("GROVE_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "GroveConfig.from_env: host=%s port=%d workspaces=%s provider=%s log_level=%s",
            config.host, config.port, config.workspaces_root,
            config.provider, config.log_level,
        )
        return config
