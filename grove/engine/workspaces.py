"""Workspace lifecycle: clone, resolve, branch and worktree creation.

A workspace is one ``git worktree`` checked out to its own branch under
``workspaces_root``. The manager keeps no state of its own; every record
lives in the :class:`WorkspaceStore`.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from grove.shared.models.workspace import Workspace

from .errors import NotFoundError, ValidationError
from .process import ProcessRunner
from .workspace_store import WorkspaceStore

logger = logging.getLogger(__name__)

SCRIPT_CONFIG_FILES = ("grove.yaml", "grove.json")
DEFAULT_BASE_BRANCH = "main"

_NON_SLUG_RE = re.compile(r"[^a-z0-9-]+")


def slugify(value: str) -> str:
    """Lower-case, collapse runs outside ``[a-z0-9-]`` to ``-``, trim hyphens."""
    return _NON_SLUG_RE.sub("-", value.lower()).strip("-")


def _now_ms() -> int:
    return int(time.time() * 1000)


def _random_suffix() -> int:
    return secrets.randbelow(1_000_000)


def repo_name_from_url(repo_url: str) -> str:
    """``https://host/org/my-repo.git`` -> ``my-repo``. Handles scp-style URLs."""
    path = urlparse(repo_url).path if "://" in repo_url else repo_url.rsplit(":", 1)[-1]
    name = path.rstrip("/").rsplit("/", 1)[-1]
    if name.endswith(".git"):
        name = name[: -len(".git")]
    return name or "repo"


def branch_slug(requested: str | None, now_ms: int | None = None) -> str:
    stamp = now_ms if now_ms is not None else _now_ms()
    raw = requested.strip() if requested and requested.strip() else f"ai/task-{stamp}"
    return slugify(raw) or f"ai-task-{stamp}"


@dataclass
class CreateWorkspaceRequest:
    repo_path: str | None = None
    repo_url: str | None = None
    name: str | None = None
    branch: str | None = None
    base_branch: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CreateWorkspaceRequest:
        def _opt(key: str) -> str | None:
            value = data.get(key)
            if value is None:
                return None
            if not isinstance(value, str):
                raise ValidationError(f"{key} must be a string")
            return value.strip() or None

        return cls(
            repo_path=_opt("repoPath"),
            repo_url=_opt("repoUrl"),
            name=_opt("name"),
            branch=_opt("branch"),
            base_branch=_opt("baseBranch"),
        )


@dataclass(frozen=True)
class ScriptResult:
    success: bool
    output: str
    exit_code: int

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "output": self.output, "exitCode": self.exit_code}


class WorkspaceManager:
    """Creates and looks up workspaces."""

    def __init__(
        self,
        store: WorkspaceStore,
        runner: ProcessRunner,
        *,
        workspaces_root: str | Path,
        repos_root: str | Path,
        clone_timeout: float | None = 900.0,
        script_timeout: float | None = 900.0,
    ) -> None:
        self._store = store
        self._runner = runner
        self._workspaces_root = Path(workspaces_root).expanduser()
        self._repos_root = Path(repos_root).expanduser()
        self._clone_timeout = clone_timeout
        self._script_timeout = script_timeout

    @property
    def workspaces_root(self) -> Path:
        return self._workspaces_root

    # ── Creation ──────────────────────────────────────────────

    async def create_workspace(self, request: CreateWorkspaceRequest) -> Workspace:
        """Create a branch + worktree for *request* and register it.

        Raises ValidationError when neither a path nor a URL is given and
        ExternalToolError when any git step fails. Nothing is retried.
        """
        if not request.repo_path and not request.repo_url:
            raise ValidationError("repoPath or repoUrl is required")

        if request.repo_url:
            source = await self.clone_repository(request.repo_url)
        else:
            source = Path(request.repo_path).expanduser()
            if not source.is_dir():
                raise ValidationError(f"Repository path does not exist: {request.repo_path}")

        repo_root = await self.resolve_repo_root(source)
        base_branch = request.base_branch or await self.default_branch(repo_root)

        now_ms = _now_ms()
        branch = branch_slug(request.branch, now_ms)
        worktree_path = self._workspaces_root / f"{branch}-{_random_suffix()}"
        await asyncio.to_thread(self._workspaces_root.mkdir, parents=True, exist_ok=True)

        if await self.branch_exists(repo_root, branch):
            logger.info("Attaching worktree to existing branch %s", branch)
            await self._runner.git(
                "worktree", "add", str(worktree_path), branch, cwd=repo_root,
            )
        else:
            await self._runner.git(
                "worktree", "add", "-b", branch, str(worktree_path), base_branch,
                cwd=repo_root,
            )

        workspace = Workspace(
            id=f"ws-{now_ms}-{secrets.token_hex(3)}",
            name=request.name or branch,
            branch_name=branch,
            base_branch=base_branch,
            repo_root_path=str(repo_root),
            worktree_path=str(worktree_path),
            created_at=now_ms,
        )
        await self._store.add(workspace)
        logger.info(
            "Workspace created id=%s repo=%s branch=%s base=%s",
            workspace.id, repo_root, branch, base_branch,
        )
        return workspace

    async def clone_repository(self, repo_url: str) -> Path:
        target = self._repos_root / f"{slugify(repo_name_from_url(repo_url)) or 'repo'}-{_random_suffix()}"
        await asyncio.to_thread(self._repos_root.mkdir, parents=True, exist_ok=True)
        logger.info("Cloning %s into %s", repo_url, target)
        await self._runner.git(
            "clone", repo_url, str(target), timeout=self._clone_timeout,
        )
        return target

    async def resolve_repo_root(self, path: str | Path) -> Path:
        result = await self._runner.git("rev-parse", "--show-toplevel", cwd=path)
        return Path(result.stdout.strip())

    async def default_branch(self, repo_root: str | Path) -> str:
        """``origin/HEAD``'s target, else the checked-out branch, else ``main``."""
        head_ref = await self._runner.git(
            "symbolic-ref", "--short", "refs/remotes/origin/HEAD",
            cwd=repo_root, check=False,
        )
        if head_ref.ok and head_ref.stdout.strip():
            return head_ref.stdout.strip().rsplit("/", 1)[-1] or DEFAULT_BASE_BRANCH

        current = await self._runner.git(
            "rev-parse", "--abbrev-ref", "HEAD", cwd=repo_root, check=False,
        )
        name = current.stdout.strip()
        if current.ok and name and name != "HEAD":
            return name
        return DEFAULT_BASE_BRANCH

    # ── Branch lookups ─────────────────────────────────────────

    async def branch_exists(self, repo_path: str | Path, branch: str) -> bool:
        if not branch:
            raise ValidationError("branch is required")
        repo_root = await self.resolve_repo_root(repo_path)
        result = await self._runner.git(
            "show-ref", "--verify", "--quiet", f"refs/heads/{branch}",
            cwd=repo_root, check=False,
        )
        return result.ok

    async def branch_exists_remote(self, repo_url: str, branch: str) -> bool:
        if not branch:
            raise ValidationError("branch is required")
        result = await self._runner.git(
            "ls-remote", "--heads", repo_url, branch,
            timeout=self._clone_timeout, check=False,
        )
        if not result.ok:
            logger.info("ls-remote failed for %s: %s", repo_url, result.stderr.strip())
            return False
        return bool(result.stdout.strip())

    # ── Lookup ────────────────────────────────────────────────

    async def get_workspace(self, workspace_id: str) -> Workspace:
        if not workspace_id:
            raise NotFoundError("Workspace ID required")
        return await self._store.get(workspace_id)

    async def list_workspaces(self) -> list[Workspace]:
        return await self._store.list_all()

    # ── Scripts ───────────────────────────────────────────────

    async def load_script_config(self, workspace: Workspace) -> dict[str, Any]:
        """Read ``grove.yaml`` (or ``grove.json``) from the worktree; ``{}`` when absent."""
        return await asyncio.to_thread(_read_script_config, Path(workspace.worktree_path))

    async def run_script(self, workspace_id: str, script_type: str) -> ScriptResult:
        if not script_type or not str(script_type).strip():
            raise ValidationError("script type is required")
        workspace = await self.get_workspace(workspace_id)
        config = await self.load_script_config(workspace)
        command = config.get(script_type)
        if not command or not isinstance(command, str):
            raise ValidationError(f"No {script_type} script defined in {SCRIPT_CONFIG_FILES[0]}")

        logger.info("Running %s script in workspace %s", script_type, workspace.id)
        result = await self._runner.run(
            "sh", "-c", command,
            cwd=workspace.worktree_path,
            env={
                "GROVE_WORKSPACE_PATH": workspace.worktree_path,
                "GROVE_ROOT_PATH": str(self._workspaces_root),
            },
            timeout=self._script_timeout,
            check=False,
        )
        return ScriptResult(
            success=result.ok,
            output=result.stdout + result.stderr,
            exit_code=result.returncode,
        )


def _read_script_config(worktree: Path) -> dict[str, Any]:
    for filename in SCRIPT_CONFIG_FILES:
        path = worktree / filename
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            continue
        try:
            data = yaml.safe_load(raw) if filename.endswith(".yaml") else json.loads(raw)
        except (yaml.YAMLError, json.JSONDecodeError) as exc:
            raise ValidationError(f"Invalid script config {filename}", detail=str(exc)) from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ValidationError(f"Script config {filename} must be a mapping")
        return data
    return {}
