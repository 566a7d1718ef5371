"""YAML configuration loader.

Overlays a YAML file on top of the env-derived :class:`GroveConfig`.
Every section and key is optional.

Example YAML:
    server:
      host: 127.0.0.1
      port: 4545

    paths:
      workspaces_root: ~/grove/workspaces
      repos_root: ~/grove/repos
      state_path: ~/.grove/state.json
      oauth_dir: ~/.grove

    oauth:
      client_id: 9d1c250a-e61b-44d9-88ed-5944d1962f5e
      flow_ttl_seconds: 600
      refresh_threshold_seconds: 300

    approvals:
      timeout_seconds: 300
      max_subscribers: 32
      required_tools: [Deploy]

    timeouts:
      git_seconds: 120
      clone_seconds: 900
      script_seconds: 900

    terminal:
      shell: /bin/zsh
      cols: 120
      rows: 30

    provider:
      name: anthropic
      model: claude-sonnet-4-5
      review_model: claude-haiku-4-5

    logging:
      level: DEBUG
"""
from __future__ import annotations

import logging
import os
from dataclasses import replace
from pathlib import Path
from typing import Any

import yaml

from .config import GroveConfig
from .errors import ValidationError

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "GROVE_CONFIG"


def default_config_path() -> Path:
    return Path.home() / ".grove" / "config.yaml"


def resolve_config_path(cli_path: str | None = None) -> Path | None:
    """``--config`` beats ``$GROVE_CONFIG`` beats ``~/.grove/config.yaml``.

    Explicit paths are returned even when missing so the caller fails
    loudly; the default path is only used when it exists.
    """
    if cli_path:
        return Path(cli_path).expanduser()
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    fallback = default_config_path()
    return fallback if fallback.is_file() else None


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        raise ValidationError(f"config section '{name}' must be a mapping")
    return value


def _path(value: Any) -> str:
    return str(Path(str(value)).expanduser())


def load_yaml_config(path: str | Path, base: GroveConfig | None = None) -> GroveConfig:
    """Load *path* and overlay it on *base* (``GroveConfig.from_env()`` by default)."""
    path = Path(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path) as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise
    if not isinstance(raw, dict):
        raise ValidationError(f"config file {path} must contain a mapping")

    config = base if base is not None else GroveConfig.from_env()
    updates: dict[str, Any] = {}

    # ── Server ─────────────────────────────────────────────────
    server = _section(raw, "server")
    if "host" in server:
        updates["host"] = str(server["host"])
    if "port" in server:
        updates["port"] = int(server["port"])

    # ── Paths ──────────────────────────────────────────────────
    paths = _section(raw, "paths")
    for key in ("workspaces_root", "repos_root", "state_path", "oauth_dir", "pending_flows_path"):
        if paths.get(key):
            updates[key] = _path(paths[key])

    # ── OAuth ──────────────────────────────────────────────────
    oauth_raw = _section(raw, "oauth")
    if "flow_ttl_seconds" in oauth_raw:
        updates["oauth_flow_ttl_seconds"] = float(oauth_raw["flow_ttl_seconds"])
    if "refresh_threshold_seconds" in oauth_raw:
        updates["token_refresh_threshold_seconds"] = float(oauth_raw["refresh_threshold_seconds"])
    endpoint_keys = ("client_id", "authorize_url", "token_url", "redirect_uri", "scopes")
    endpoint_updates = {k: str(oauth_raw[k]) for k in endpoint_keys if oauth_raw.get(k)}
    if endpoint_updates:
        updates["oauth"] = replace(config.oauth, **endpoint_updates)

    # ── Approvals ──────────────────────────────────────────────
    approvals = _section(raw, "approvals")
    if "timeout_seconds" in approvals:
        updates["approval_timeout_seconds"] = float(approvals["timeout_seconds"])
    if "max_subscribers" in approvals:
        updates["max_approval_subscribers"] = int(approvals["max_subscribers"])
    if approvals.get("required_tools"):
        updates["approval_required_tools"] = [str(t) for t in approvals["required_tools"]]

    # ── Timeouts ───────────────────────────────────────────────
    timeouts = _section(raw, "timeouts")
    for key in ("git", "clone", "script"):
        if f"{key}_seconds" in timeouts:
            updates[f"{key}_timeout_seconds"] = float(timeouts[f"{key}_seconds"])

    # ── Terminal ───────────────────────────────────────────────
    terminal = _section(raw, "terminal")
    if terminal.get("shell"):
        updates["shell"] = str(terminal["shell"])
    if "cols" in terminal:
        updates["terminal_cols"] = int(terminal["cols"])
    if "rows" in terminal:
        updates["terminal_rows"] = int(terminal["rows"])

    # ── Provider ───────────────────────────────────────────────
    provider = _section(raw, "provider")
    if provider.get("name"):
        updates["provider"] = str(provider["name"])
    if provider.get("model"):
        updates["default_model"] = str(provider["model"])
    if provider.get("review_model"):
        updates["review_model"] = str(provider["review_model"])
    if provider.get("api_base_url"):
        updates["api_base_url"] = str(provider["api_base_url"]).rstrip("/")

    # ── Logging ────────────────────────────────────────────────
    logging_raw = _section(raw, "logging")
    if logging_raw.get("level"):
        updates["log_level"] = str(logging_raw["level"]).upper()
    if logging_raw.get("dir"):
        updates["log_dir"] = _path(logging_raw["dir"])

    logger.info(
        "Config loaded from %s: sections=[%s] overrides=%d",
        path.name, ", ".join(sorted(raw)) or "empty", len(updates),
    )
    return replace(config, **updates)


def load_config(cli_path: str | None = None) -> GroveConfig:
    """Environment defaults, overlaid by the first config file found."""
    config = GroveConfig.from_env()
    path = resolve_config_path(cli_path)
    if path is None:
        return config
    return load_yaml_config(path, base=config)
